"""Runtime configuration: YAML settings with environment overrides, logging setup."""
