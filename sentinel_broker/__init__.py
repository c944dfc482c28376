"""Policy-gated AWS credential broker core.

Evaluates access policies, resolves approval and break-glass overrides,
tracks issued sessions and writes decision audit records.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
