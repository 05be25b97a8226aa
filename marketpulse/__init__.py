"""MarketPulse: anomaly detection and rule-based alerts for Polymarket markets."""

__version__ = "0.1.0"
