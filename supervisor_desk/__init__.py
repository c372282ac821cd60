"""Human-in-the-loop escalation engine for an automated front desk."""

__version__ = "0.1.0"
