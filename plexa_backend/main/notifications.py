from __future__ import annotations

import logging
from typing import Optional

import requests

from django.conf import settings
from django.core.mail import send_mail
from django.template.loader import render_to_string
from django.utils import timezone

from app_settings.services import settings_provider

logger = logging.getLogger(__name__)

COLOR_OK = 0x2ECC71
COLOR_WARN = 0xF1C40F
COLOR_DANGER = 0xE74C3C


def _brand() -> str:
    return settings_provider.get("brand_name") or "Plexa"


def _send_email(subject: str, template: str, context: dict, recipient: Optional[str]) -> None:
    if not recipient:
        return
    try:
        context = {
            **context,
            "brand": _brand(),
            "site_url": settings.SITE_URL.rstrip("/"),
        }
        body = render_to_string(template, context)
        send_mail(
            subject, body, settings.DEFAULT_FROM_EMAIL, [recipient], fail_silently=True
        )
    except Exception:
        logger.exception("Failed to send %s email to %s", template, recipient)


def _post_discord(title: str, fields: dict, color: int) -> None:
    webhook = settings_provider.get("discord_webhook_url")
    if not webhook:
        return
    embed = {
        "title": title,
        "color": color,
        "fields": [
            {"name": k, "value": str(v)[:1024] or "-", "inline": True}
            for k, v in fields.items()
        ],
        "timestamp": timezone.now().isoformat(),
    }
    try:
        resp = requests.post(webhook, json={"embeds": [embed]}, timeout=10)
        if resp.status_code >= 400:
            logger.warning("Discord webhook HTTP %s for %s", resp.status_code, title)
    except requests.RequestException as exc:
        logger.warning("Discord webhook failed for %s: %s", title, exc)


# ---------- email ----------


def send_invoice_created_email(invoice) -> None:
    _send_email(
        f"[{_brand()}] New invoice #{invoice.pk}",
        "emails/invoice_created.txt",
        {"invoice": invoice, "user": invoice.user},
        invoice.user.email,
    )


def send_server_ready_email(server, panel_password: Optional[str] = None) -> None:
    _send_email(
        f"[{_brand()}] Your server {server.server_name} is ready",
        "emails/server_ready.txt",
        {"server": server, "user": server.user, "panel_password": panel_password},
        server.user.email,
    )


# ---------- discord ----------


def notify_plan_purchased(server, invoice) -> None:
    _post_discord(
        "New purchase",
        {
            "Plan": server.plan.name,
            "User": server.user.username,
            "Server": server.server_name,
            "Amount (USD)": invoice.amount,
        },
        COLOR_OK,
    )


def notify_invoice_paid(invoice) -> None:
    _post_discord(
        "Invoice paid",
        {
            "Invoice": f"#{invoice.pk}",
            "User": invoice.user.username,
            "Method": invoice.payment_method,
            "Amount (USD)": invoice.amount,
        },
        COLOR_OK,
    )


def notify_provisioning_failed(server) -> None:
    _post_discord(
        "Provisioning failed",
        {
            "Server": server.server_name,
            "User": server.user.username,
            "Reason": server.failure_reason or "-",
        },
        COLOR_DANGER,
    )


def notify_radar_alert(server, details: dict, status: str) -> None:
    suspicious = details.get("suspicious_files") or []
    _post_discord(
        f"Radar {status.upper()}",
        {
            "Server": f"{server.server_name} ({server.ptero_identifier})",
            "User": server.user.username,
            "CPU %": f"{details.get('cpu', 0):.1f}",
            "Disk %": f"{details.get('disk', 0):.1f}",
            "RAM %": f"{details.get('ram', 0):.1f}",
            "Suspicious files": ", ".join(suspicious[:10]) or "-",
        },
        COLOR_DANGER if status == "danger" else COLOR_WARN,
    )
