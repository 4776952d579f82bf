"""
Scheduler des objectifs commerciaux (customer targets)
- Rollover mensuel: 00:01 le 1er de chaque mois
- Rollover trimestriel: 00:05 le 1er janvier / avril / juillet / octobre
- Rollover annuel: 00:10 le 1er janvier
- Expiration des targets ponctuels: tous les jours à 01:00
Toutes les heures sont en UTC.

Démarrage autonome (worker sans API):
    python scheduler_service.py
"""

import asyncio
import logging
import signal
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from config import (
    SCHEDULER_TIMEZONE,
    TARGET_CATCHUP_MAX_CYCLES,
    to_iso,
)
from services.periods import VALID_PERIOD_TYPES, PeriodType, get_period_type_or_raise
from services.target_rollover import TargetRolloverEngine

logger = logging.getLogger("target_scheduler")


class SchedulerStartupFailure(Exception):
    """Un job n'a pas pu être enregistré"""
    pass


# Jobs planifiés (crontab standard, évalué en UTC)
JOB_DEFINITIONS = [
    {
        "id": "monthly-rollover",
        "name": "Rollover mensuel des targets",
        "cron": "1 0 1 * *",
        "period": PeriodType.MONTHLY,
    },
    {
        "id": "quarterly-rollover",
        "name": "Rollover trimestriel des targets",
        "cron": "5 0 1 1,4,7,10 *",
        "period": PeriodType.QUARTERLY,
    },
    {
        "id": "yearly-rollover",
        "name": "Rollover annuel des targets",
        "cron": "10 0 1 1 *",
        "period": PeriodType.YEARLY,
    },
    {
        "id": "daily-expiry-check",
        "name": "Expiration des targets ponctuels",
        "cron": "0 1 * * *",
        "period": None,
    },
]


def rollover_job_id(period_type) -> str:
    return f"{get_period_type_or_raise(period_type).value}-rollover"


class TargetScheduler:
    """Gestionnaire des tâches planifiées des targets"""

    def __init__(self, engine: Optional[TargetRolloverEngine] = None, timezone: str = SCHEDULER_TIMEZONE):
        self.engine = engine if engine is not None else TargetRolloverEngine()
        self.timezone = timezone
        self.scheduler = self._new_scheduler()
        self.startup_failures: List[str] = []
        self._inflight = set()
        self._started = False

    def _new_scheduler(self) -> AsyncIOScheduler:
        return AsyncIOScheduler(timezone=self.timezone)

    # ==================== CYCLE DE VIE ====================

    def start(self, catch_up: bool = False) -> List[str]:
        """
        Enregistre tous les jobs et démarre le scheduler.
        Un job qui échoue à l'enregistrement est loggé, les autres démarrent quand même.

        Returns:
            Liste des ids de jobs enregistrés
        """
        registered = []
        self.startup_failures = []

        for job in JOB_DEFINITIONS:
            try:
                self._register(job)
                registered.append(job["id"])
                logger.info(f"[SCHEDULER] {job['name']} scheduled ({job['cron']} {self.timezone})")
            except Exception as e:
                failure = SchedulerStartupFailure(f"{job['id']}: {e}")
                self.startup_failures.append(str(failure))
                logger.error(f"[SCHEDULER] Could not schedule {job['id']}: {failure}")

        if catch_up:
            self.scheduler.add_job(
                self.run_catch_up,
                "date",
                id="startup-catch-up",
                name="Rattrapage des rollovers au démarrage",
                replace_existing=True,
            )

        if not self._started:
            self.scheduler.start()
            self._started = True
        logger.info(f"[SCHEDULER] Target scheduler started with {len(registered)} jobs")
        return registered

    def _register(self, job: Dict[str, Any]):
        trigger = CronTrigger.from_crontab(job["cron"], timezone=self.timezone)
        if job["period"] is not None:
            func, args = self.run_rollover_job, [job["period"].value]
        else:
            func, args = self.run_expiry_job, []

        self.scheduler.add_job(
            func,
            trigger,
            args=args,
            id=job["id"],
            name=job["name"],
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=3600,
        )

    def stop(self):
        """
        Annule les déclenchements futurs.
        Un batch en cours n'est PAS interrompu (voir wait_inflight).
        """
        if not self._started:
            return
        self._started = False
        self.scheduler.shutdown(wait=False)
        # APScheduler 3.11 diffère l'arrêt d'un tour de boucle:
        # un start() suivant repart d'une instance neuve
        self.scheduler = self._new_scheduler()
        logger.info("[SCHEDULER] Target scheduler stopped")

    async def wait_inflight(self):
        """Attend la fin des batchs déjà lancés"""
        if self._inflight:
            logger.info(f"[SCHEDULER] Waiting for {len(self._inflight)} in-flight batch(es)")
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def shutdown(self):
        self.stop()
        await asyncio.sleep(0)
        await self.wait_inflight()

    @asynccontextmanager
    async def running(self, catch_up: bool = False):
        """Scheduler actif dans le bloc, arrêté proprement à la sortie"""
        self.start(catch_up=catch_up)
        try:
            yield self
        finally:
            await self.shutdown()

    # ==================== EXÉCUTION ====================

    async def _execute(self, job_id: str, trigger: str, factory) -> Dict[str, Any]:
        """
        Exécute un batch du moteur. Le batch tourne dans sa propre task,
        protégée contre l'annulation du job (stop du scheduler).
        Ne lève jamais: l'erreur est loggée et renvoyée dans le résultat.
        """
        started_at = self.engine.now()
        task = asyncio.ensure_future(factory())
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

        try:
            result = await asyncio.shield(task)
        except Exception as e:
            logger.exception(f"[SCHEDULER] {job_id} failed: {e}")
            result = {"success": False, "error": str(e), "message": f"{job_id} failed"}

        await self.engine.store.save_run({
            "job_id": job_id,
            "trigger": trigger,
            "run_at": to_iso(started_at),
            "finished_at": to_iso(self.engine.now()),
            "result": result,
        })
        return result

    async def run_rollover_job(self, period_type: str):
        """Point d'entrée cron d'un rollover"""
        job_id = rollover_job_id(period_type)
        logger.info(f"[SCHEDULER] Running {period_type} target rollover...")
        result = await self._execute(
            job_id, "cron", lambda: self.engine.rollover_due_periods(period_type)
        )
        logger.info(f"[SCHEDULER] {period_type} target rollover completed: {result.get('message')}")
        return result

    async def run_expiry_job(self):
        """Point d'entrée cron du sweep d'expiration"""
        logger.info("[SCHEDULER] Running daily target status check...")
        result = await self._execute("daily-expiry-check", "cron", self.engine.sweep_expired)
        logger.info(f"[SCHEDULER] Daily target status check completed: {result.get('message')}")
        return result

    async def run_catch_up(self) -> Dict[str, Any]:
        """Rattrapage: chaque type avance jusqu'à la période courante, puis expiration"""
        results = []
        for period in PeriodType:
            results.append(await self._execute(
                rollover_job_id(period),
                "catch_up",
                lambda period=period: self.engine.catch_up_rollover(
                    period, max_cycles=TARGET_CATCHUP_MAX_CYCLES
                ),
            ))
        results.append(await self._execute("daily-expiry-check", "catch_up", self.engine.sweep_expired))
        return {"success": all(r.get("success") for r in results), "results": results}

    # ==================== OPÉRATIONS ADMIN ====================

    async def trigger_immediate_rollover(self) -> Dict[str, Any]:
        """Rollover des trois types, l'un après l'autre (même chemin que le cron)"""
        logger.info("[SCHEDULER] Triggering immediate rollover for all periods...")
        results = []
        for period in PeriodType:
            results.append(await self.rollover_by_period(period.value))
        return {
            "success": all(r.get("success") for r in results),
            "results": results,
            "message": "Immediate rollover completed",
        }

    async def rollover_by_period(self, period_type: str) -> Dict[str, Any]:
        """
        Rollover d'un seul type de période.

        Raises:
            ValueError si le type n'est pas monthly / quarterly / yearly
        """
        period = get_period_type_or_raise(period_type)
        return await self._execute(
            rollover_job_id(period), "manual",
            lambda: self.engine.rollover_due_periods(period)
        )

    async def sweep_expired(self) -> Dict[str, Any]:
        return await self._execute("daily-expiry-check", "manual", self.engine.sweep_expired)

    def status(self) -> Dict[str, Any]:
        jobs = []
        for job in self.scheduler.get_jobs():
            next_run = getattr(job, "next_run_time", None)
            jobs.append({
                "id": job.id,
                "name": job.name,
                "trigger": str(job.trigger),
                "next_run_time": to_iso(next_run) if next_run else None,
                "scheduled": next_run is not None,
            })

        return {
            "running": self._started,
            "timezone": self.timezone,
            "total_jobs": len(jobs),
            "jobs": jobs,
            "in_flight": len(self._inflight),
            "startup_failures": list(self.startup_failures),
            "period_types": VALID_PERIOD_TYPES,
        }

    async def get_scheduler_status(self, runs_limit: int = 10) -> Dict[str, Any]:
        """status() + derniers rapports d'exécution"""
        status = self.status()
        try:
            status["last_runs"] = await self.engine.store.last_runs(runs_limit)
        except Exception as e:
            logger.error(f"[SCHEDULER] Could not load last runs: {e}")
            status["last_runs"] = []
        return status


# Instance globale
task_scheduler = TargetScheduler()


async def main():
    """Worker autonome: tourne jusqu'à SIGINT / SIGTERM"""
    from config import TARGET_SCHEDULER_CATCHUP

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    async with task_scheduler.running(catch_up=TARGET_SCHEDULER_CATCHUP):
        await stop_event.wait()


if __name__ == "__main__":
    asyncio.run(main())
