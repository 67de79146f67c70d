"""chatpilot - autonomous chat monitoring with a pluggable language-model oracle."""

__version__ = "0.1.0"
