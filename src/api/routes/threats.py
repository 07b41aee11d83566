"""Admin endpoints for threat clustering, action rules and defense actions."""

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from src.api.dependencies import (
    get_cluster_engine,
    get_replay_service,
    get_repository,
    require_admin,
)
from src.domains.threats.cluster_engine import ThreatClusterEngine
from src.domains.threats.replay import ThreatReplayService
from src.domains.threats.repository import ThreatRepository

logger = structlog.get_logger()
router = APIRouter(
    prefix="/api/v1/threats",
    tags=["threats"],
    dependencies=[Depends(require_admin)],
)


class ReplayRequest(BaseModel):
    limit: int = 50


@router.post("/analysis/trigger")
async def trigger_analysis(
    engine: ThreatClusterEngine = Depends(get_cluster_engine),  # noqa: B008
) -> dict:
    result = await engine.trigger_manual_analysis()
    return {"success": True, "result": result.model_dump(by_alias=True)}


@router.get("/analysis/status")
async def analysis_status(
    engine: ThreatClusterEngine = Depends(get_cluster_engine),  # noqa: B008
    repository: ThreatRepository = Depends(get_repository),  # noqa: B008
) -> dict:
    return {**engine.status(), "cluster_stats": await repository.cluster_stats()}


@router.get("/clusters")
async def list_clusters(
    limit: int = Query(50, ge=1, le=200),
    repository: ThreatRepository = Depends(get_repository),  # noqa: B008
) -> dict:
    clusters = await repository.list_clusters(limit)
    return {
        "clusters": [c.model_dump(mode="json") for c in clusters],
        "stats": await repository.cluster_stats(),
    }


@router.get("/clusters/{cluster_id}")
async def get_cluster(
    cluster_id: str,
    repository: ThreatRepository = Depends(get_repository),  # noqa: B008
) -> dict:
    cluster = await repository.get_cluster(cluster_id)
    if cluster is None:
        raise HTTPException(status_code=404, detail=f"Cluster {cluster_id} not found")

    patterns = await repository.get_cluster_patterns(cluster_id)
    return {
        **cluster.model_dump(mode="json"),
        "patterns": [p.model_dump(mode="json") for p in patterns],
    }


@router.get("/action-rules")
async def list_action_rules(
    repository: ThreatRepository = Depends(get_repository),  # noqa: B008
) -> dict:
    rules = await repository.list_rules()
    return {"rules": [r.model_dump(mode="json") for r in rules], "count": len(rules)}


@router.get("/defense-actions")
async def list_defense_actions(
    repository: ThreatRepository = Depends(get_repository),  # noqa: B008
) -> dict:
    actions = await repository.list_active_defense_actions()
    return {"actions": [a.model_dump(mode="json") for a in actions], "count": len(actions)}


@router.delete("/defense-actions/{action_id}")
async def deactivate_defense_action(
    action_id: str,
    repository: ThreatRepository = Depends(get_repository),  # noqa: B008
) -> dict:
    action = await repository.deactivate_defense_action(action_id)
    if action is None:
        raise HTTPException(status_code=404, detail=f"Defense action {action_id} not found")
    return {"success": True, "action": action.model_dump(mode="json")}


@router.get("/defense-stats")
async def defense_stats(
    replay: ThreatReplayService = Depends(get_replay_service),  # noqa: B008
) -> dict:
    return await replay.defense_statistics()


@router.post("/replay")
async def run_replay(
    body: ReplayRequest,
    replay: ThreatReplayService = Depends(get_replay_service),  # noqa: B008
) -> dict:
    try:
        summary, learning = await replay.replay_and_learn(body.limit)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    logger.info(
        "threat_replay_requested",
        limit=body.limit,
        analyzed=summary.total_analyzed,
        rules_created=learning.rules_created,
    )
    return {
        "success": True,
        "replay": summary.model_dump(mode="json"),
        "learning": learning.model_dump(mode="json"),
        "message": (
            f"Threat replay completed: {summary.total_analyzed} threats analyzed, "
            f"{learning.rules_created} new defense rules created"
        ),
    }
