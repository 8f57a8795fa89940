"""infraflow - workflow orchestration for infrastructure-as-code changes."""

__version__ = "0.1.0"
