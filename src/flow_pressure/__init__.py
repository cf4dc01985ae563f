"""Money-flow pressure scoring and paper-trading order engine."""

import warnings as _warnings

# yfinance emits pandas deprecation chatter on every history() call
_warnings.filterwarnings("ignore", category=FutureWarning, module="yfinance")

__version__ = "0.1.0"

__all__ = [
    "settings",
    "services",
]
