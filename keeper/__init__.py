"""Off-chain keeper for permissionless perpetual-futures markets."""

__version__ = "0.1.0"
