"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Sales Targets - Routes Customer Targets                                     ║
║                                                                              ║
║  Surface admin du scheduler de rollover + mutations unitaires:               ║
║  - statut / déclenchement manuel du scheduler (admin)                        ║
║  - création, achievement, rollover manuel d'un target (manager)              ║
║  - historique de performance                                                 ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

from fastapi import APIRouter, Depends, HTTPException

from models.target import AchievementCreate, InvalidAmount, TargetCreate, target_summary
from routes.auth import get_current_user, require_admin, require_manager
from scheduler_service import TargetScheduler, task_scheduler
from services.periods import VALID_PERIOD_TYPES
from services.target_store import PersistenceError, TargetNotFound

router = APIRouter(prefix="/customer-targets", tags=["Customer Targets"])


def get_target_scheduler() -> TargetScheduler:
    return task_scheduler


# ==================== SCHEDULER (ADMIN) ====================

@router.get("/scheduler/status")
async def scheduler_status(
    user: dict = Depends(require_admin),
    scheduler: TargetScheduler = Depends(get_target_scheduler),
):
    """Jobs planifiés, prochaine exécution, derniers rapports"""
    return {"success": True, "data": await scheduler.get_scheduler_status()}


@router.post("/scheduler/trigger-rollover")
async def trigger_rollover(
    user: dict = Depends(require_admin),
    scheduler: TargetScheduler = Depends(get_target_scheduler),
):
    """Rollover immédiat des trois types de période"""
    return await scheduler.trigger_immediate_rollover()


@router.post("/scheduler/rollover/{period_type}")
async def rollover_period(
    period_type: str,
    user: dict = Depends(require_admin),
    scheduler: TargetScheduler = Depends(get_target_scheduler),
):
    """Rollover d'un seul type (monthly / quarterly / yearly)"""
    if period_type not in VALID_PERIOD_TYPES:
        raise HTTPException(
            status_code=400,
            detail="Invalid period type. Must be monthly, quarterly, or yearly"
        )
    return await scheduler.rollover_by_period(period_type)


@router.post("/scheduler/update-expired")
async def update_expired(
    user: dict = Depends(require_admin),
    scheduler: TargetScheduler = Depends(get_target_scheduler),
):
    """Passe en expired les targets ponctuels dont la fenêtre est dépassée"""
    return await scheduler.sweep_expired()


# ==================== TARGETS ====================

@router.post("")
async def create_target(
    data: TargetCreate,
    user: dict = Depends(require_manager),
    scheduler: TargetScheduler = Depends(get_target_scheduler),
):
    if not data.created_by:
        data.created_by = user.get("id")
    try:
        target = await scheduler.engine.create_target(data)
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"success": True, "data": target_summary(target)}


@router.post("/{target_id}/achievements")
async def record_achievement(
    target_id: str,
    data: AchievementCreate,
    user: dict = Depends(require_manager),
    scheduler: TargetScheduler = Depends(get_target_scheduler),
):
    """Ajoute un montant réalisé (commande / facture) au target"""
    try:
        target = await scheduler.engine.record_achievement(target_id, data.amount, data.attribution)
    except InvalidAmount as e:
        raise HTTPException(status_code=400, detail=str(e))
    except TargetNotFound:
        raise HTTPException(status_code=404, detail="Target not found")
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"success": True, "data": target_summary(target)}


@router.post("/{target_id}/rollover")
async def rollover_target(
    target_id: str,
    user: dict = Depends(require_manager),
    scheduler: TargetScheduler = Depends(get_target_scheduler),
):
    """Rollover manuel d'un target (ignoré s'il n'est pas dû)"""
    try:
        return await scheduler.engine.rollover_target(target_id)
    except TargetNotFound:
        raise HTTPException(status_code=404, detail="Target not found")
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.get("/{target_id}/history")
async def target_history(
    target_id: str,
    user: dict = Depends(get_current_user),
    scheduler: TargetScheduler = Depends(get_target_scheduler),
):
    try:
        return await scheduler.engine.get_target_history(target_id)
    except TargetNotFound:
        raise HTTPException(status_code=404, detail="Target not found")
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))
