"""riskengine: real-time transaction risk scoring."""
