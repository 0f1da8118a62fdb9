"""JvmScope reconciliation engine."""

from jvmscope.engine.delta import TargetDelta, compute_delta
from jvmscope.engine.driver import ReconciliationDriver
from jvmscope.engine.observations import NodeSpec, Observation, TargetSpec
from jvmscope.engine.ownership import ObjectMeta, OwnerReference, OwnershipChainResolver
from jvmscope.engine.reconcile import Reconciler, ReconcileResult
from jvmscope.engine.topology import Topology, apply_in_transaction

__all__ = [
    "TargetDelta",
    "compute_delta",
    "ReconciliationDriver",
    "NodeSpec",
    "Observation",
    "TargetSpec",
    "ObjectMeta",
    "OwnerReference",
    "OwnershipChainResolver",
    "Reconciler",
    "ReconcileResult",
    "Topology",
    "apply_in_transaction",
]
