"""
Chain Mirror - Reconcilers

One reconciler per mirrored entity type, run by the coordinator in
SYNC_ORDER (profiles, donations, products).
"""

from chainmirror.services.reconcile.base import Reconciler, fields_match
from chainmirror.services.reconcile.donations import DonationReconciler
from chainmirror.services.reconcile.products import ProductReconciler
from chainmirror.services.reconcile.profiles import ProfileReconciler

__all__ = [
    "Reconciler",
    "fields_match",
    "ProfileReconciler",
    "DonationReconciler",
    "ProductReconciler",
]
