"""Chain Mirror - ledger to store synchronizer."""

__version__ = "0.1.0"
