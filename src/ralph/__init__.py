"""Ralph: verification and escalation core for automated TODO-function injection."""

__version__ = "0.1.0"
