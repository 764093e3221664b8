"""
Client for the panel's application API (``/api/application``).

The client never retries on its own: every failure surfaces as a
``PanelError`` whose message is safe to store as a server's failure reason.
Retrying is an explicit action one level up.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests

from app_settings.services import SettingsProvider, settings_provider
from orders.services.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class PanelError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class EggVariable:
    env_variable: str
    default_value: str = ""
    user_viewable: bool = False
    user_editable: bool = False


@dataclass
class EggTemplate:
    nest_id: int
    egg_id: int
    docker_image: str
    startup: str
    variables: List[EggVariable] = field(default_factory=list)


@dataclass
class ServerSpec:
    name: str
    user_id: int
    nest_id: int
    egg_id: int
    memory: int
    disk: int
    cpu: int
    databases: Optional[int] = None
    extra_allocations: int = 0
    backups: int = 0
    docker_image: str = ""
    startup: str = ""
    plan_environment: Dict[str, Any] = field(default_factory=dict)
    user_overrides: Dict[str, Any] = field(default_factory=dict)
    location_id: Optional[int] = None


@dataclass
class CreatedServer:
    id: int
    identifier: str
    name: str


def build_environment(
    egg: EggTemplate, plan_environment: Dict[str, Any], user_overrides: Dict[str, Any]
) -> Dict[str, str]:
    """
    Three layers, later wins: egg defaults, then the plan's non-empty admin
    values, then buyer input for variables the egg lets the buyer see.
    """
    env: Dict[str, str] = {
        v.env_variable: "" if v.default_value is None else str(v.default_value)
        for v in egg.variables
    }

    for key, conf in (plan_environment or {}).items():
        value = conf.get("value") if isinstance(conf, dict) else conf
        if value is not None and str(value) != "":
            env[key] = str(value)

    visible = {v.env_variable for v in egg.variables if v.user_viewable}
    for key, value in (user_overrides or {}).items():
        if key not in visible:
            logger.info("Ignoring buyer override for hidden variable %s", key)
            continue
        if value is None:
            continue
        env[key] = str(value)
    return env


class PanelClient:
    timeout = 15

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        config: Optional[SettingsProvider] = None,
    ):
        config = config or settings_provider
        base_url = base_url or config.get("ptero_url")
        api_key = api_key or config.get("ptero_api_key")
        if not base_url or not api_key:
            raise ConfigurationError("The game panel is not configured.")
        self.base_url = base_url.rstrip("/") + "/api/application"
        self.api_key = api_key

    # ---------- transport ----------

    def _request(self, method: str, path: str, *, ok_statuses=(), **kwargs) -> requests.Response:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        try:
            resp = requests.request(
                method,
                f"{self.base_url}{path}",
                headers=headers,
                timeout=self.timeout,
                **kwargs,
            )
        except requests.RequestException as exc:
            logger.warning("Panel %s %s unreachable: %s", method, path, exc)
            raise PanelError(f"Panel unreachable: {exc.__class__.__name__}") from exc

        if resp.status_code >= 400 and resp.status_code not in ok_statuses:
            raise PanelError(self._error_reason(resp), status_code=resp.status_code)
        return resp

    @staticmethod
    def _json(resp: requests.Response) -> dict:
        """Body of a successful reply; anything but a JSON object is a PanelError."""
        try:
            body = resp.json()
        except ValueError as exc:
            logger.error("Panel returned a non-JSON body (HTTP %s)", resp.status_code)
            raise PanelError(
                f"Panel returned an unreadable response (HTTP {resp.status_code})",
                status_code=resp.status_code,
            ) from exc
        if not isinstance(body, dict):
            raise PanelError(
                f"Panel returned an unexpected response (HTTP {resp.status_code})",
                status_code=resp.status_code,
            )
        return body

    @staticmethod
    def _error_reason(resp: requests.Response) -> str:
        try:
            errors = resp.json().get("errors") or []
        except ValueError:
            errors = []
        details = [e.get("detail") for e in errors if isinstance(e, dict) and e.get("detail")]
        if details:
            return f"Panel error {resp.status_code}: {'; '.join(details)}"
        return f"Panel error {resp.status_code}"

    # ---------- accounts ----------

    def find_user_by_email(self, email: str) -> Optional[dict]:
        resp = self._request("GET", "/users", params={"filter[email]": email})
        for item in self._json(resp).get("data") or []:
            attrs = (item.get("attributes") if isinstance(item, dict) else None) or {}
            if (attrs.get("email") or "").lower() == email.lower():
                if not attrs.get("id"):
                    raise PanelError("Panel listed the user without an id")
                return attrs
        return None

    def create_user(self, *, email: str, username: str, password: str,
                    first_name: str = "", last_name: str = "") -> dict:
        resp = self._request(
            "POST",
            "/users",
            json={
                "email": email,
                "username": username,
                "first_name": first_name or username,
                "last_name": last_name or "User",
                "password": password,
                "root_admin": False,
                "language": "en",
            },
        )
        attrs = self._json(resp).get("attributes") or {}
        if not attrs.get("id"):
            raise PanelError("Panel created the user but returned no id")
        return attrs

    def ensure_account(self, user) -> tuple:
        """
        Returns ``(panel_user_id, new_password_or_None)``. Looks the email up
        first so retries never create a second panel account.
        """
        if user.panel_account_id:
            return user.panel_account_id, None

        password = None
        existing = self.find_user_by_email(user.email)
        if existing:
            panel_id = existing["id"]
            logger.info("Found existing panel user %s for %s", panel_id, user.pk)
        else:
            password = secrets.token_hex(8)
            created = self.create_user(
                email=user.email,
                username=user.username,
                password=password,
                first_name=user.first_name,
                last_name=user.last_name,
            )
            panel_id = created["id"]
            logger.info("Created panel user %s for %s", panel_id, user.pk)

        stored = user.set_panel_account(panel_id)
        return stored, password if stored == panel_id else None

    # ---------- eggs ----------

    def get_egg(self, nest_id: int, egg_id: int) -> EggTemplate:
        try:
            resp = self._request(
                "GET", f"/nests/{nest_id}/eggs/{egg_id}", params={"include": "variables"}
            )
        except PanelError as exc:
            raise PanelError(
                f"Egg {nest_id}/{egg_id} could not be loaded ({exc})", exc.status_code
            ) from exc

        attrs = self._json(resp).get("attributes") or {}
        if not attrs:
            raise PanelError(f"Egg {nest_id}/{egg_id} returned no definition")

        images = attrs.get("docker_images") or {}
        docker_image = next(iter(images.values()), "") if images else attrs.get("docker_image", "")
        try:
            variables = [
                EggVariable(
                    env_variable=v["attributes"]["env_variable"],
                    default_value=v["attributes"].get("default_value") or "",
                    user_viewable=bool(v["attributes"].get("user_viewable")),
                    user_editable=bool(v["attributes"].get("user_editable")),
                )
                for v in (attrs.get("relationships", {}).get("variables", {}).get("data") or [])
            ]
        except (KeyError, TypeError, AttributeError) as exc:
            raise PanelError(f"Egg {nest_id}/{egg_id} has a malformed variable list") from exc
        return EggTemplate(
            nest_id=nest_id,
            egg_id=egg_id,
            docker_image=docker_image,
            startup=attrs.get("startup", ""),
            variables=variables,
        )

    # ---------- servers ----------

    def create_server(self, spec: ServerSpec) -> CreatedServer:
        egg = self.get_egg(spec.nest_id, spec.egg_id)
        environment = build_environment(egg, spec.plan_environment, spec.user_overrides)

        payload: Dict[str, Any] = {
            "name": spec.name,
            "user": spec.user_id,
            "egg": spec.egg_id,
            "docker_image": spec.docker_image or egg.docker_image,
            "startup": spec.startup or egg.startup,
            "environment": environment,
            "limits": {
                "memory": spec.memory,
                "swap": 0,
                "disk": spec.disk,
                "io": 500,
                "cpu": spec.cpu,
            },
            "feature_limits": {
                "databases": 1 if spec.databases is None else spec.databases,
                # One default allocation is always implied
                "allocations": spec.extra_allocations + 1,
                "backups": spec.backups,
            },
        }
        if spec.location_id:
            payload["deploy"] = {
                "locations": [spec.location_id],
                "dedicated_ip": False,
                "port_range": [],
            }
        else:
            payload["allocation"] = {"default": 0}

        resp = self._request("POST", "/servers", json=payload)
        attrs = self._json(resp).get("attributes") or {}
        if not attrs.get("id"):
            raise PanelError("Panel accepted the server but returned no id")
        logger.info("Panel server %s (%s) created", attrs["id"], attrs.get("identifier"))
        return CreatedServer(
            id=attrs["id"], identifier=attrs.get("identifier", ""), name=attrs.get("name", spec.name)
        )

    def suspend_server(self, server_id: int) -> None:
        self._request("POST", f"/servers/{server_id}/suspend")

    def unsuspend_server(self, server_id: int) -> None:
        self._request("POST", f"/servers/{server_id}/unsuspend")

    def delete_server(self, server_id: int) -> bool:
        """True if deleted now, False if the panel no longer knew the server."""
        resp = self._request("DELETE", f"/servers/{server_id}", ok_statuses=(404,))
        if resp.status_code == 404:
            logger.info("Panel server %s already gone", server_id)
            return False
        return True
