"""
Fast Signals

Streaming multi-timeframe signal detection with risk-gated alerting.
Market updates flow through a per-instrument cache, a bank of structural
and order-flow detectors, a stateful risk gate and finally the notifier.
"""

__version__ = "1.0.0"
