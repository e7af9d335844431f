"""predindex - NegRisk asset catalog built from decoded chain events."""

__version__ = "0.1.0"
