"""Ticket storage: git-backed replicas of the shared tickets origin."""

from wiggum.store.replica import Replica, ClonedReplica, OriginReplica, Revision, Reconciler
from wiggum.store.bootstrap import init_origin, install_receive_hook, clone_replica, open_replica

__all__ = [
    "Replica",
    "ClonedReplica",
    "OriginReplica",
    "Revision",
    "Reconciler",
    "init_origin",
    "install_receive_hook",
    "clone_replica",
    "open_replica",
]
