"""Live paper trading loop."""

from .trader import LiveTrader, TraderState, current_window_start

__all__ = ["LiveTrader", "TraderState", "current_window_start"]
