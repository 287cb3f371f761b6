"""
Donations are append-only on the ledger, so after the first pass nearly
every record is `unchanged`. Orphans appear only if the application's
state was reset.
"""

from chainmirror.models.records import EntityType
from chainmirror.services.reconcile.base import Reconciler


class DonationReconciler(Reconciler):
    entity_type = EntityType.DONATION
