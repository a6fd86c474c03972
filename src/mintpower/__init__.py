"""mintpower: reward minting, claiming and combat-power aggregation over a referral forest."""

__version__ = "0.1.0"
