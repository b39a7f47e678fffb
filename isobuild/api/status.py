"""
GET /status
Reports the resource pool and container counts of every active run.
"""
from fastapi import APIRouter

from isobuild.api.runs import store

router = APIRouter()


@router.get("/status")
async def get_status():
    runs = []
    for entry in store.active():
        orchestrator = entry.orchestrator
        pool = orchestrator.pool.status() if orchestrator.pool is not None else None
        runs.append({
            "run_id": orchestrator.run_id,
            "interrupted": orchestrator.termination.interrupted,
            "active_containers": len(orchestrator.manager.registry),
            "pool": {
                "capacity": pool.capacity,
                "available": pool.available,
                "in_use": pool.in_use,
                "status": pool.status,
            } if pool else {"status": "initialized"},
        })
    return {"active_runs": len(runs), "runs": runs}
