from tenanthub.services.instances import InstanceService
from tenanthub.services.worker_ids import WorkerIdAllocator

__all__ = ["InstanceService", "WorkerIdAllocator"]
