"""DeepSentry - LLM-driven diagnosis and remediation over a local or SSH shell."""

__version__ = "0.4.0"
