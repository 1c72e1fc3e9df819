from keeper.solana.keypair import load_keypair
from keeper.solana.submitter import ReplayGuard, TransactionSubmitter

__all__ = ["ReplayGuard", "TransactionSubmitter", "load_keypair"]
