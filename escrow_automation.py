"""
Escrow Automation Module.

Background sweeps for the marketplace. None of them is needed for
correctness: the claim window is checked when a seller claims, and a buyer's
redirect already verifies payment. The jobs only tidy up after users who
never come back.

    - Claim reminders: tell sellers when an order's claim window has opened
    - Pending verification: re-verify checkouts whose callback never arrived
    - Flagged-user report: daily summary of flagged users for the admin

Dependencies:
    - APScheduler: For background job scheduling
    - escrow_service.py / settlement_service.py: For escrow operations
"""

import logging
from datetime import datetime, timedelta
from typing import Optional, Dict, Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import get_config, Config
from escrow_service import EscrowService
from exceptions import GatewayUnverifiedError
from settlement_service import SettlementService
from utils import format_currency, utcnow

logger = logging.getLogger(__name__)

FLAGGED_REPORT_LIMIT = 20


class EscrowAutomation:
    """
    Scheduler for the escrow background jobs.

    Attributes:
        db: Ledger store
        escrow: Escrow service (user notifications)
        settlement: Settlement service (gateway re-verification)
        admin_notifier: Admin alert channel (optional)
    """

    def __init__(
        self,
        database,
        escrow: EscrowService,
        settlement: SettlementService,
        config: Optional[Config] = None,
        admin_notifier=None
    ):
        self.db = database
        self.escrow = escrow
        self.settlement = settlement
        self.config = config or get_config()
        self.admin_notifier = admin_notifier
        self.scheduler = AsyncIOScheduler()
        self.is_running = False

        # Statistics
        self.stats: Dict[str, Any] = {
            'claim_reminders': 0,
            'payments_reconciled': 0,
            'flag_reports': 0,
            'last_run': {}
        }

    def start(self) -> None:
        """Start the automation scheduler (must be called with a running event loop)."""
        if self.is_running:
            logger.warning("Automation scheduler already running")
            return

        self._schedule_tasks()
        self.scheduler.start()
        self.is_running = True
        self.stats['start_time'] = utcnow()

        logger.info(f"Escrow automation started with {len(self.scheduler.get_jobs())} jobs")

    def stop(self) -> None:
        """Stop the automation scheduler."""
        if not self.is_running:
            return

        self.scheduler.shutdown(wait=False)
        self.is_running = False
        logger.info("Escrow automation stopped")

    def _schedule_tasks(self) -> None:
        """Schedule all automation tasks."""

        self.scheduler.add_job(
            self.send_claim_reminders,
            trigger=IntervalTrigger(minutes=self.config.claim_reminder_interval_minutes),
            id='claim_reminders',
            name='Claim Window Reminders',
            max_instances=1,
            misfire_grace_time=300
        )

        self.scheduler.add_job(
            self.verify_pending_payments,
            trigger=IntervalTrigger(minutes=self.config.pending_verify_interval_minutes),
            id='verify_pending_payments',
            name='Verify Pending Payments',
            max_instances=1,
            misfire_grace_time=300
        )

        # Daily at 8 AM
        self.scheduler.add_job(
            self.report_flagged_users,
            trigger=CronTrigger(hour=8, minute=0),
            id='flagged_user_report',
            name='Flagged User Report',
            max_instances=1
        )

        logger.info("All automation tasks scheduled")

    async def send_claim_reminders(self, now: Optional[datetime] = None) -> int:
        """
        Remind sellers whose claim window opened since the previous run.

        Funds are never released here; the seller still has to claim.

        Returns:
            Number of reminders sent
        """
        now = now or utcnow()
        window = timedelta(hours=self.config.claim_window_hours)
        interval = timedelta(minutes=self.config.claim_reminder_interval_minutes)
        sent = 0

        try:
            orders = await self.db.list_claimable_orders(now - window)
            for order in orders:
                if order.claim_available_at(window) <= now - interval:
                    continue  # reminded on an earlier run
                await self.escrow.notify_user(
                    order.seller_id,
                    "Funds ready to claim",
                    f"The claim window for order #{order.id} has passed. You can now claim "
                    f"{format_currency(order.seller_amount, self.config.currency)}."
                )
                sent += 1

            self.stats['claim_reminders'] += sent
            self.stats['last_run']['claim_reminders'] = now
            logger.info(f"Claim reminder task completed: {sent} reminders sent")

        except Exception as e:
            logger.error(f"Claim reminder task failed: {e}", exc_info=True)

        return sent

    async def verify_pending_payments(self, now: Optional[datetime] = None) -> int:
        """
        Re-verify recent pending orders with the gateway.

        Only orders between PENDING_VERIFY_MIN_AGE_MINUTES and
        PENDING_VERIFY_MAX_AGE_HOURS old are checked, newest first. Older
        checkouts are treated as abandoned.

        Returns:
            Number of orders that turned out to be paid
        """
        now = now or utcnow()
        cutoff = now - timedelta(minutes=self.config.pending_verify_min_age_minutes)
        oldest = now - timedelta(hours=self.config.pending_verify_max_age_hours)
        reconciled = 0
        failed = 0

        try:
            orders = await self.db.list_stale_pending_orders(cutoff, oldest)
            logger.info(f"Found {len(orders)} pending orders to re-verify")

            for order in orders:
                try:
                    await self.settlement.verify_and_reconcile(order.payment_reference)
                    reconciled += 1
                except GatewayUnverifiedError as e:
                    logger.debug(f"Order {order.id} still unpaid: {e}")
                except Exception as e:
                    failed += 1
                    logger.error(f"Failed to re-verify order {order.id}: {e}")

            self.stats['payments_reconciled'] += reconciled
            self.stats['last_run']['verify_pending_payments'] = now
            logger.info(
                f"Pending verification completed: {reconciled} reconciled, {failed} failed"
            )

        except Exception as e:
            logger.error(f"Pending verification task failed: {e}", exc_info=True)

        return reconciled

    async def report_flagged_users(self) -> bool:
        """Send the admin a summary of the most suspicious flagged users."""
        if not self.admin_notifier or not self.config.admin_chat_id:
            logger.debug("No admin channel configured, skipping flagged-user report")
            return False

        try:
            users = await self.db.list_flagged_users(FLAGGED_REPORT_LIMIT)
            if not users:
                return False

            lines = [
                f"{u.username} (id {u.id}): score {u.suspicion_score}"
                + (" [banned]" if u.is_banned else "")
                for u in users
            ]
            sent = await self.admin_notifier.send(
                self.config.admin_chat_id,
                f"{len(users)} flagged users",
                "\n".join(lines)
            )
            if sent:
                self.stats['flag_reports'] += 1
            self.stats['last_run']['flagged_user_report'] = utcnow()
            return sent

        except Exception as e:
            logger.error(f"Flagged-user report failed: {e}", exc_info=True)
            return False

    def get_stats(self) -> Dict[str, Any]:
        """Get automation statistics."""
        return {
            'is_running': self.is_running,
            'scheduled_jobs': len(self.scheduler.get_jobs()) if self.is_running else 0,
            'stats': self.stats,
        }
