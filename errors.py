# errors.py
"""
errors.py

Exception types shared by the synthesis and simulation modules.

Only the fatal cases are exceptions. A gradient lookup outside the grid is
recovered locally by the safety controller, and a synthesis run that does not
converge within its horizon is reported through a flag on its result.
"""


class InvalidConfigurationError(ValueError):
    """Malformed configuration, rejected before any synthesis work begins."""


class IntegrationError(RuntimeError):
    """The forward simulation could not produce a valid trajectory."""
