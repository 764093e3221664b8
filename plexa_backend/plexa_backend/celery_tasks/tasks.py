import logging
from datetime import timedelta

from celery import shared_task

from django.core.cache import cache
from django.utils import timezone

from app_settings.services import settings_provider
from billing_management.billing_services import billing_settings, create_renewal_invoice
from main import notifications
from main.models import ActiveServer
from main.utilities.locks import task_lock
from orders.services.exceptions import BusinessError
from provisioning.pterodactyl import PanelClient, PanelError
from radar.scanner import scan_all

logger = logging.getLogger(__name__)

RADAR_LAST_RUN_KEY = "radar:last_run"
RADAR_MIN_INTERVAL = 5
RADAR_MAX_INTERVAL = 1440


def _panel(panel=None):
    return panel or PanelClient(config=settings_provider)


# ----------------------
# RENEWAL INVOICES
# ----------------------
@shared_task(name="plexa_backend.celery_tasks.tasks.generate_renewal_invoices")
def generate_renewal_invoices():
    """
    Daily. Issue a pending renewal invoice for every active server whose
    renewal date falls within the look-ahead window, unless the same user and
    plan already has a recent pending invoice.
    """
    lock_key = "billing:locks:renewal_invoices"
    with task_lock(lock_key, 60 * 30) as acquired:
        if not acquired:
            logger.info("[renewals] skipped: another worker holds the lock")
            return {"checked": 0, "created": 0, "locked": True}

        days = billing_settings()["RENEWAL_LOOKAHEAD_DAYS"]
        qs = ActiveServer.objects.renewing_within(days).order_by("renewal_date")
        checked = created = 0
        for server in qs.iterator(chunk_size=200):
            checked += 1
            try:
                invoice = create_renewal_invoice(server, settings_provider)
            except Exception:
                logger.exception("[renewals] server #%s failed", server.pk)
                continue
            if invoice is None:
                continue
            created += 1
            logger.info("[renewals] invoice #%s for server #%s", invoice.pk, server.pk)
            notifications.send_invoice_created_email(invoice)

        logger.info("[renewals] done | checked=%s created=%s", checked, created)
        return {"checked": checked, "created": created, "locked": False}


# ----------------------
# OVERDUE SUSPENSION
# ----------------------
@shared_task(name="plexa_backend.celery_tasks.tasks.suspend_overdue_servers")
def suspend_overdue_servers(panel=None):
    """
    Suspend servers whose renewal date has passed. The panel is told first;
    a panel failure leaves that server active for the next run.
    """
    lock_key = "billing:locks:suspend_overdue"
    with task_lock(lock_key, 60 * 20) as acquired:
        if not acquired:
            logger.info("[suspend] skipped: another worker holds the lock")
            return {"checked": 0, "suspended": 0, "failed": 0, "locked": True}

        client = None
        checked = suspended = failed = 0
        for server in ActiveServer.objects.overdue().iterator(chunk_size=200):
            checked += 1
            try:
                if server.ptero_server_id:
                    client = client or _panel(panel)
                    client.suspend_server(server.ptero_server_id)
                moved = server.transition(
                    ActiveServer.Status.SUSPENDED,
                    from_statuses=[ActiveServer.Status.ACTIVE, ActiveServer.Status.CANCELLED],
                    suspended_at=timezone.now(),
                )
            except (PanelError, BusinessError) as exc:
                failed += 1
                logger.error("[suspend] server #%s: panel error %s", server.pk, exc)
                continue
            except Exception:
                failed += 1
                logger.exception("[suspend] server #%s failed", server.pk)
                continue

            if moved:
                suspended += 1
                logger.info("[suspend] server #%s suspended", server.pk)

        logger.info(
            "[suspend] done | checked=%s suspended=%s failed=%s", checked, suspended, failed
        )
        return {"checked": checked, "suspended": suspended, "failed": failed, "locked": False}


# ----------------------
# DELETION AFTER GRACE
# ----------------------
@shared_task(name="plexa_backend.celery_tasks.tasks.delete_expired_suspended_servers")
def delete_expired_suspended_servers(panel=None):
    """
    Delete servers suspended longer than the grace period. The local row is
    only removed once the panel confirms (404 counts as already gone).
    """
    lock_key = "billing:locks:delete_suspended"
    with task_lock(lock_key, 60 * 20) as acquired:
        if not acquired:
            logger.info("[delete] skipped: another worker holds the lock")
            return {"checked": 0, "deleted": 0, "failed": 0, "locked": True}

        grace = billing_settings()["SUSPENDED_GRACE_DAYS"]
        cutoff = timezone.now() - timedelta(days=grace)
        client = None
        checked = deleted = failed = 0
        for server in ActiveServer.objects.suspended_before(cutoff).iterator(chunk_size=200):
            checked += 1
            try:
                if server.ptero_server_id:
                    client = client or _panel(panel)
                    client.delete_server(server.ptero_server_id)
            except (PanelError, BusinessError) as exc:
                # Keep the local row so the remote server is not orphaned
                failed += 1
                logger.error("[delete] server #%s: panel error %s", server.pk, exc)
                continue
            except Exception:
                failed += 1
                logger.exception("[delete] server #%s: panel call failed", server.pk)
                continue

            pk = server.pk
            try:
                server.delete()
            except Exception:
                failed += 1
                logger.exception("[delete] server #%s removed on the panel but not locally", pk)
                continue
            deleted += 1
            logger.info("[delete] server #%s deleted after %s-day grace", pk, grace)

        logger.info("[delete] done | checked=%s deleted=%s failed=%s", checked, deleted, failed)
        return {"checked": checked, "deleted": deleted, "failed": failed, "locked": False}


# ----------------------
# ABUSE RADAR
# ----------------------
def radar_interval_minutes() -> int:
    minutes = settings_provider.get_int("radar_interval", 30)
    return max(RADAR_MIN_INTERVAL, min(RADAR_MAX_INTERVAL, minutes))


@shared_task(name="plexa_backend.celery_tasks.tasks.radar_scan")
def radar_scan(force: bool = False, panel=None):
    """
    Beat fires every few minutes; the scan itself only runs once the
    configured ``radar_interval`` has elapsed since the previous run.
    """
    now = timezone.now()
    interval = radar_interval_minutes()
    last_run = cache.get(RADAR_LAST_RUN_KEY)
    if not force and last_run and now - last_run < timedelta(minutes=interval):
        return {"skipped": True, "reason": "interval"}

    with task_lock("radar:locks:scan", 60 * interval) as acquired:
        if not acquired:
            logger.info("[radar] skipped: another worker holds the lock")
            return {"skipped": True, "reason": "locked"}
        cache.set(RADAR_LAST_RUN_KEY, now, None)
        return scan_all(settings_provider, panel)
