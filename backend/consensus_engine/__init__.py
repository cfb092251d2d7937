"""Crowdsourced verification consensus and anti-abuse scoring engine."""
