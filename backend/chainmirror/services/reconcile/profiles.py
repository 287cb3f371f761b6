from chainmirror.models.records import EntityType
from chainmirror.services.reconcile.base import Reconciler


class ProfileReconciler(Reconciler):
    """Creator profiles, keyed by owner account."""

    entity_type = EntityType.PROFILE
