import logging

from celery import shared_task

from .services import process_commission

logger = logging.getLogger(__name__)


@shared_task(
    bind=True,
    autoretry_for=(Exception,),
    retry_backoff=30,
    retry_jitter=True,
    max_retries=3,
)
def process_commission_task(self, invoice_id: int):
    amount = process_commission(invoice_id)
    return {"invoice_id": invoice_id, "commission": str(amount) if amount else None}
