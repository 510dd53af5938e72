"""Check management: trap resolution, broker selection and metric registration."""

from trapmetrics.checkmgr.broker import BrokerSelector, get_broker_cn
from trapmetrics.checkmgr.cert import load_ca_context
from trapmetrics.checkmgr.resolver import CheckResolver, ResolverState, Trap

__all__ = [
    "BrokerSelector",
    "CheckResolver",
    "ResolverState",
    "Trap",
    "get_broker_cn",
    "load_ca_context",
]
