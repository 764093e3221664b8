"""
Abuse radar: resource heuristics plus a bounded file walk over the panel's
client API. ``danger`` suspends the server, ``warning`` only reports.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional
from urllib.parse import quote

import requests
from django.utils import timezone

from app_settings.services import SettingsProvider, settings_provider
from main import notifications
from main.models import ActiveServer
from orders.services.exceptions import BusinessError
from provisioning.pterodactyl import PanelClient, PanelError

logger = logging.getLogger(__name__)

SAFE = ActiveServer.RadarStatus.SAFE
WARNING = ActiveServer.RadarStatus.WARNING
DANGER = ActiveServer.RadarStatus.DANGER

THRESHOLDS = {
    "cpu": {"warn": 90, "danger": 150},
    "disk": {"warn": 90, "danger": 98},
}
MAX_DEPTH = 3
SKIP_DIRS = {"node_modules", ".git", "vendor", "cache", ".cache", "logs"}
CLIENT_TIMEOUT = 5


@dataclass
class ScanResult:
    status: str
    details: dict = field(default_factory=dict)


class ClientApi:
    """Minimal panel client-API session used only for scanning."""

    def __init__(self, base_url: str, api_key: str):
        self.base_url = base_url.rstrip("/") + "/api/client"
        self.session = requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"Bearer {api_key}",
                "Accept": "application/json",
                "Content-Type": "application/json",
            }
        )

    def get(self, path: str) -> dict:
        resp = self.session.get(f"{self.base_url}{path}", timeout=CLIENT_TIMEOUT)
        resp.raise_for_status()
        return resp.json()

    def resources(self, identifier: str) -> dict:
        return self.get(f"/servers/{identifier}/resources").get("attributes") or {}

    def list_files(self, identifier: str, directory: str) -> list:
        data = self.get(f"/servers/{identifier}/files/list?directory={quote(directory)}")
        return data.get("data") or []


def _matches(name: str, patterns: List[str]) -> bool:
    return any(p in name for p in patterns)


def scan_directory(
    client: ClientApi,
    identifier: str,
    directory: str,
    suspicious: List[str],
    ignore: List[str],
    found: Optional[List[str]] = None,
    depth: int = 0,
) -> List[str]:
    found = [] if found is None else found
    if depth > MAX_DEPTH:
        return found

    try:
        entries = client.list_files(identifier, directory)
    except requests.HTTPError as exc:
        if exc.response is None or exc.response.status_code != 404:
            logger.warning("[radar] listing %s on %s failed: %s", directory, identifier, exc)
        return found

    for entry in entries:
        attrs = entry.get("attributes") or {}
        raw_name = attrs.get("name") or ""
        name = raw_name.lower()
        path = f"/{raw_name}" if directory == "/" else f"{directory}/{raw_name}"

        if _matches(name, ignore):
            continue
        if _matches(name, suspicious):
            found.append(path)
        if attrs.get("is_file") is False and name not in SKIP_DIRS:
            scan_directory(client, identifier, path, suspicious, ignore, found, depth + 1)
    return found


def _percent(used, total) -> float:
    if not used or not total:
        return 0.0
    return used / total * 100


def classify(cpu: float, disk: float, suspicious_files: List[str]) -> str:
    if suspicious_files:
        return DANGER
    status = SAFE
    for metric, value in (("cpu", cpu), ("disk", disk)):
        if value > THRESHOLDS[metric]["danger"]:
            return DANGER
        if value > THRESHOLDS[metric]["warn"]:
            status = WARNING
    return status


def scan_server(
    server: ActiveServer, client: ClientApi, suspicious: List[str], ignore: List[str]
) -> ScanResult:
    identifier = server.ptero_identifier
    try:
        stats = client.resources(identifier)
        usage = stats.get("resources") or {}
        meta = stats.get("meta") or {}
        details = {
            "cpu": usage.get("cpu_absolute") or 0,
            "disk": _percent(usage.get("disk_bytes"), meta.get("disk_bytes")),
            "ram": _percent(usage.get("memory_bytes"), meta.get("memory_bytes")),
            "suspicious_files": [],
        }
        logger.info(
            "[radar] server #%s: cpu=%.1f%% disk=%.1f%% ram=%.1f%%",
            server.pk,
            details["cpu"],
            details["disk"],
            details["ram"],
        )
        details["suspicious_files"] = scan_directory(client, identifier, "/", suspicious, ignore)
    except (requests.RequestException, ValueError) as exc:
        logger.error("[radar] failed to scan server #%s: %s", server.pk, exc)
        return ScanResult(status=SAFE, details={"error": str(exc)})

    return ScanResult(
        status=classify(details["cpu"], details["disk"], details["suspicious_files"]),
        details=details,
    )


def _auto_suspend(
    server: ActiveServer, panel: Optional[PanelClient], config: SettingsProvider
) -> bool:
    try:
        (panel or PanelClient(config=config)).suspend_server(server.ptero_server_id)
    except (PanelError, BusinessError) as exc:
        logger.error("[radar] could not suspend server #%s: %s", server.pk, exc)
        return False
    moved = server.transition(
        ActiveServer.Status.SUSPENDED,
        from_statuses=[ActiveServer.Status.ACTIVE],
        suspended_at=timezone.now(),
    )
    if moved:
        logger.warning("[radar] auto-suspended server #%s", server.pk)
    return moved


def scan_all(
    config: Optional[SettingsProvider] = None, panel: Optional[PanelClient] = None
) -> dict:
    """Scan every active server. Skips quietly when radar is off or unconfigured."""
    config = config or settings_provider
    summary = {
        "scanned": 0,
        "warning": 0,
        "danger": 0,
        "suspended": 0,
        "failed": 0,
        "skipped": False,
    }

    if not config.get_bool("radar_enabled"):
        logger.info("[radar] disabled; skipping scan")
        return {**summary, "skipped": True}

    url = config.get("ptero_url")
    key = config.get("ptero_client_api_key")
    if not (url and key):
        logger.warning("[radar] client API key or panel URL missing; skipping scan")
        return {**summary, "skipped": True}

    suspicious = config.get_list("radar_suspicious_files")
    ignore = config.get_list("radar_ignore_files")
    alerts = config.get_bool("radar_discord_alerts")
    client = ClientApi(url, key)

    servers = ActiveServer.objects.select_related("user").filter(
        status=ActiveServer.Status.ACTIVE, ptero_identifier__isnull=False
    ).exclude(ptero_identifier="")

    for server in servers.iterator(chunk_size=200):
        try:
            result = scan_server(server, client, suspicious, ignore)
            ActiveServer.objects.filter(pk=server.pk).update(
                radar_status=result.status,
                radar_last_scan=timezone.now(),
                radar_details=result.details,
            )
            summary["scanned"] += 1
            if result.status == SAFE:
                continue

            summary[result.status] += 1
            if alerts:
                notifications.notify_radar_alert(server, result.details, result.status)
            if result.status == DANGER and server.ptero_server_id:
                if _auto_suspend(server, panel, config):
                    summary["suspended"] += 1
        except Exception:
            summary["failed"] += 1
            logger.exception("[radar] server #%s failed", server.pk)

    logger.info("[radar] done | %s", summary)
    return summary
