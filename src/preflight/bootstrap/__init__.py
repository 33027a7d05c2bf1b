"""
集群信任引导模块集合。

此包包含节点引导记录、存储、连通性探测与周期性协调器，按功能拆分以提高可维护性。
"""

from .periodical import start_periodic_bootstrap_task, stop_periodic_bootstrap_task
from .services import TrustBootstrapReconciler, create_reconciler

__all__ = [
    "TrustBootstrapReconciler",
    "create_reconciler",
    "start_periodic_bootstrap_task",
    "stop_periodic_bootstrap_task",
]
