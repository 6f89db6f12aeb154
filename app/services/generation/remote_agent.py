"""
HTTP Rendering Agent
Drives a remote browser-automation sidecar that owns the actual browser

The sidecar exposes one resource per browser session:

    POST   /sessions                         -> {"session_id": ...}
    POST   /sessions/{id}/login              {"email", "password"}
    POST   /sessions/{id}/options            {"option", "value"}
    GET    /sessions/{id}/options/{option}   -> {"value", "selected": bool}
    POST   /sessions/{id}/prompt             {"prompt"}
    POST   /sessions/{id}/trigger            {"strategy"} -> {"started": bool}
    GET    /sessions/{id}/artifact?match=... -> {"url": ... | null}
    POST   /sessions/{id}/keepalive
    POST   /sessions/{id}/purge
    DELETE /sessions/{id}

Element lookup heuristics live entirely in the sidecar.
"""

from typing import Optional, Sequence

import httpx
import structlog

from app.exceptions import InfrastructureError
from app.services.generation.agent import ArtifactRef, Credentials, RenderingAgent, Session

logger = structlog.get_logger(__name__)

TRIGGER_STRATEGIES = ("click", "evaluate_click", "mouse_click", "dispatch_event")


class HttpRenderingAgent(RenderingAgent):
    """RenderingAgent backed by the browser-automation sidecar"""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 120.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        """
        Args:
            base_url: Sidecar root URL
            token: Bearer token for the sidecar
            timeout: Per-request timeout in seconds (login and page loads are slow)
            client: Pre-built client (tests inject one with a mock transport)
        """
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self.client = client or httpx.AsyncClient(base_url=base_url, headers=headers, timeout=timeout)
        self.logger = logger.bind(service="rendering_agent")

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = await self.client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            self.logger.error("render_agent_unreachable", method=method, path=path, error=str(e))
            raise InfrastructureError(f"Rendering agent unreachable: {e}") from e

        if response.status_code >= 400:
            self.logger.warning(
                "render_agent_error_response",
                method=method,
                path=path,
                status=response.status_code,
                response=response.text[:500]
            )
            response.raise_for_status()

        if not response.content:
            return {}
        return response.json()

    async def open_session(self, label: Optional[str] = None) -> Session:
        data = await self._request("POST", "/sessions", json={"label": label})
        session = Session(session_id=data["session_id"], label=label)
        self.logger.info("render_session_opened", session_id=session.session_id, label=label)
        return session

    async def login(self, session: Session, credentials: Credentials) -> None:
        await self._request(
            "POST",
            f"/sessions/{session.session_id}/login",
            json={"email": credentials.email, "password": credentials.password}
        )

    async def apply_option(self, session: Session, option: str, value: str) -> None:
        await self._request(
            "POST",
            f"/sessions/{session.session_id}/options",
            json={"option": option, "value": value}
        )

    async def verify_option(self, session: Session, option: str, value: str) -> bool:
        data = await self._request("GET", f"/sessions/{session.session_id}/options/{option}")
        return bool(data.get("selected")) and str(data.get("value", value)) == value

    async def enter_prompt(self, session: Session, prompt: str) -> None:
        await self._request("POST", f"/sessions/{session.session_id}/prompt", json={"prompt": prompt})

    def trigger_strategies(self) -> Sequence[str]:
        return TRIGGER_STRATEGIES

    async def trigger(self, session: Session, strategy: str) -> bool:
        data = await self._request(
            "POST",
            f"/sessions/{session.session_id}/trigger",
            json={"strategy": strategy}
        )
        return bool(data.get("started"))

    async def check_artifact(self, session: Session, match_key: str) -> Optional[ArtifactRef]:
        data = await self._request(
            "GET",
            f"/sessions/{session.session_id}/artifact",
            params={"match": match_key}
        )
        url = data.get("url")
        return ArtifactRef(url=url) if url else None

    async def keep_alive(self, session: Session) -> None:
        await self._request("POST", f"/sessions/{session.session_id}/keepalive")

    async def purge_caches(self, session: Session) -> None:
        await self._request("POST", f"/sessions/{session.session_id}/purge")

    async def close_session(self, session: Session) -> None:
        await self._request("DELETE", f"/sessions/{session.session_id}")
        self.logger.info("render_session_closed", session_id=session.session_id)
