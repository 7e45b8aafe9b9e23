"""
Core infrastructure for senseflow.

    - config.py: settings loading and validation
    - errors.py: error codes and exception hierarchy
    - logging/: structured logging with numeric levels
"""
