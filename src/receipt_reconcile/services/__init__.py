"""
Reconciliation services.

Each service takes an OperationsContext and exposes the public operations
of one component:
- ConnectionManager: file ↔ transaction connections and completeness
- PartnerService: partner assignment on transactions and files
- PartnerSourceService: receipt search patterns and invoice sources
- CategoryReconciler: no-receipt categories
- PatternLearningEngine: learned patterns and false-positive logs
- AutomationSupervisor: worker cancellation and receipt search
- PrecisionSearchQueue / GmailSyncQueue: persistent job queues
"""

from .automation import AutomationSupervisor, CancelResult, ReceiptSearchResult
from .categories import CategoryReconciler, RepairResult
from .connections import BulkUpdateResult, ConnectionManager, ConnectResult, DisconnectResult
from .job_queue import GmailSyncQueue, JobQueue, PrecisionSearchQueue, ProcessResult
from .learning import LearnResult, PatternLearningEngine, UnlearnResult
from .partner_sources import FrequencyEstimate, PartnerSourceService
from .partners import PartnerService
from .tasks import BackgroundTaskQueue, TaskRunSummary

__all__ = [
    "AutomationSupervisor",
    "BackgroundTaskQueue",
    "BulkUpdateResult",
    "CancelResult",
    "CategoryReconciler",
    "ConnectResult",
    "ConnectionManager",
    "DisconnectResult",
    "FrequencyEstimate",
    "GmailSyncQueue",
    "JobQueue",
    "LearnResult",
    "PartnerService",
    "PartnerSourceService",
    "PatternLearningEngine",
    "PrecisionSearchQueue",
    "ProcessResult",
    "ReceiptSearchResult",
    "RepairResult",
    "TaskRunSummary",
    "UnlearnResult",
]
