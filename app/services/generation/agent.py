"""
Rendering Agent Contract
Capability the orchestrator drives to run one generation on the remote site

Concrete agents implement the primitives (open_session, login, apply_option,
...). The template methods here (authenticate, configure, submit,
poll_for_artifact, release) hold the protocol discipline shared by every
implementation: partial-session cleanup, best-effort option verification,
trigger fallbacks, liveness ticks and cache purges while polling.
"""

import abc
import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Sequence

import structlog

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Credentials:
    email: str
    password: str

    def __repr__(self):
        return f"Credentials(email={self.email!r}, password='***')"


@dataclass(frozen=True)
class GenerationParams:
    prompt: str
    resolution: Optional[str] = None
    duration: Optional[str] = None
    aspect_ratio: Optional[str] = None

    def options(self) -> Dict[str, str]:
        """Remote UI options in the order they are applied"""
        options = {}
        if self.aspect_ratio:
            options["aspect_ratio"] = str(self.aspect_ratio)
        if self.resolution:
            resolution = str(self.resolution)
            options["resolution"] = resolution if resolution.endswith("p") else f"{resolution}p"
        if self.duration:
            options["duration"] = str(self.duration)
        return options


@dataclass
class Session:
    """
    Handle on one remote browser session.

    Heavyweight: one full browser instance. `released` guards the
    exactly-once release.
    """
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    label: Optional[str] = None
    opened_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    released: bool = False
    handle: Any = None  # implementation specific


@dataclass(frozen=True)
class ArtifactRef:
    url: str
    found_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class RenderingAgent(abc.ABC):
    """Base class for remote generation agents."""

    # Primitives

    @abc.abstractmethod
    async def open_session(self, label: Optional[str] = None) -> Session:
        """Start a browser session"""

    @abc.abstractmethod
    async def login(self, session: Session, credentials: Credentials) -> None:
        """Sign in on the remote site; raise on failure"""

    @abc.abstractmethod
    async def apply_option(self, session: Session, option: str, value: str) -> None:
        """Select a generation option; raise if the control cannot be operated"""

    @abc.abstractmethod
    async def verify_option(self, session: Session, option: str, value: str) -> bool:
        """Report whether an option appears selected"""

    @abc.abstractmethod
    async def enter_prompt(self, session: Session, prompt: str) -> None:
        """Type the prompt text"""

    @abc.abstractmethod
    def trigger_strategies(self) -> Sequence[str]:
        """Names of the ways generation can be started, in preference order"""

    @abc.abstractmethod
    async def trigger(self, session: Session, strategy: str) -> bool:
        """Try one trigger strategy; True when the 'started' signal was observed"""

    @abc.abstractmethod
    async def check_artifact(self, session: Session, match_key: str) -> Optional[ArtifactRef]:
        """Look for a finished video matching `match_key`"""

    @abc.abstractmethod
    async def keep_alive(self, session: Session) -> None:
        """Emit low-level activity so the session is not evicted as idle"""

    @abc.abstractmethod
    async def purge_caches(self, session: Session) -> None:
        """Drop resource caches to bound session memory growth"""

    @abc.abstractmethod
    async def close_session(self, session: Session) -> None:
        """Tear down the browser session"""

    # Protocol

    async def authenticate(self, credentials: Credentials, label: Optional[str] = None) -> Session:
        """
        Acquire a session and sign in.

        If login fails the partially acquired session is released before the
        error propagates, so callers only ever own fully authenticated sessions.
        """
        session = await self.open_session(label=label)
        try:
            await self.login(session, credentials)
        except BaseException:
            await self.release(session)
            raise
        return session

    async def configure(self, session: Session, params: GenerationParams) -> Dict[str, bool]:
        """
        Apply aspect ratio, resolution and duration.

        Returns:
            {option: verified}. Unverified options are not errors; the remote
            UI cannot always be introspected.
        """
        report = {}
        for option, value in params.options().items():
            await self.apply_option(session, option, value)
            try:
                report[option] = await self.verify_option(session, option, value)
            except Exception as e:
                logger.warning("option_verification_error", option=option, value=value, error=str(e))
                report[option] = False
        return report

    async def submit(self, session: Session, prompt: str) -> bool:
        """
        Enter the prompt and start generation.

        Returns:
            True if a trigger strategy reported the 'started' signal
        """
        await self.enter_prompt(session, prompt)
        for strategy in self.trigger_strategies():
            try:
                if await self.trigger(session, strategy):
                    logger.info("generation_triggered", session_id=session.session_id, strategy=strategy)
                    return True
            except Exception as e:
                logger.info("trigger_strategy_failed", session_id=session.session_id, strategy=strategy, error=str(e))
        return False

    async def poll_for_artifact(
        self,
        session: Session,
        match_key: str,
        interval: float,
        timeout: float,
        purge_every: int = 5
    ) -> Optional[ArtifactRef]:
        """
        Wait for the finished video.

        Checks every `interval` seconds until `timeout`; each tick sends a
        keep-alive and every `purge_every` ticks purges caches. A failing
        check is logged and polling continues.

        Returns:
            ArtifactRef, or None when the timeout elapsed without an artifact
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        tick = 0

        while True:
            try:
                artifact = await self.check_artifact(session, match_key)
                if artifact is not None:
                    return artifact
            except Exception as e:
                logger.warning("artifact_check_failed", session_id=session.session_id, tick=tick, error=str(e))

            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(interval, remaining))
            tick += 1

            try:
                await self.keep_alive(session)
                if purge_every > 0 and tick % purge_every == 0:
                    await self.purge_caches(session)
            except Exception as e:
                logger.warning("session_maintenance_failed", session_id=session.session_id, tick=tick, error=str(e))

    async def release(self, session: Session) -> None:
        """Close the session; later calls for the same session are no-ops"""
        if session.released:
            return
        session.released = True
        await self.close_session(session)
