# stepflow/config package
# Runtime settings (runtime_config) and pipeline snapshot loading (pipeline_loader).
