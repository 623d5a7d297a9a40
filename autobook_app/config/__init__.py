"""
Configuration module.

Default engine parameters, YAML overrides, and validation of both engine
parameters and user booking configurations.
"""
