"""TrioPileup: trio-aware candidate generation and pileup example encoding.

Public API is intentionally small; most users should use the CLI:

    triopileup make-examples --ref ... --reads ... --examples ... --mode calling

"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.1.0"
