"""
Composition root.

Builds the long-lived collaborators once per process (cipher, credential
store, matching backend, session bridge) and hands out a fresh FaceAuthFlow
per enrollment or verification session.

Usage:
    components = await build_components(get_config())
    flow = components.new_flow(capture=OpenCVCaptureController(), listener=print)
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from faceauth.capture import CaptureConstraints, CaptureController
from faceauth.config import get_config
from faceauth.credential_store import CredentialStore
from faceauth.crypto import EnvelopeCipher
from faceauth.errors import FaceAuthError
from faceauth.flow import FaceAuthFlow, FlowSettings, Listener
from faceauth.matching import BackendKind, MatchingBackend, RecognitionService, create_backend
from faceauth.session_bridge import AmbientSession, SessionBridge

logger = logging.getLogger(__name__)


@dataclass
class FaceAuthComponents:
    config: Dict[str, Any]
    store: CredentialStore
    backend: MatchingBackend
    bridge: SessionBridge
    constraints: CaptureConstraints
    settings: FlowSettings

    def new_flow(
        self,
        capture: CaptureController,
        listener: Optional[Listener] = None,
        session: Optional[AmbientSession] = None,
    ) -> FaceAuthFlow:
        """A flow for one capture view. Flows are not reused across sessions."""
        return FaceAuthFlow(
            backend=self.backend,
            store=self.store,
            capture=capture,
            bridge=self.bridge,
            constraints=self.constraints,
            settings=self.settings,
            session=session,
            listener=listener,
        )

    def enrollment_status(
        self, user_id: str, backend_kind: Optional[BackendKind] = None
    ) -> Dict[str, Any]:
        """Whether face login is enabled for the user (default: on the active backend)."""
        kind = BackendKind(backend_kind or self.backend.kind)
        record = self.store.get_active_record(user_id, kind)
        return {
            "user_id": user_id,
            "backend_kind": kind.value,
            "enabled": record is not None,
            "created_at": record.created_at if record else None,
            "last_used_at": record.last_used_at if record else None,
        }

    async def opt_out(self, user_id: str) -> int:
        """
        Remove the user's face login entirely.

        Remote state behind the active managed enrollment is removed first,
        then every stored record for the user is deleted.

        Returns:
            Number of records deleted.

        Raises:
            ServiceError: If the managed collection could not be updated.
                          Local records are kept in that case.
        """
        if self.backend.kind == BackendKind.MANAGED:
            if await asyncio.to_thread(self.store.is_enabled, user_id, BackendKind.MANAGED):
                reference = await asyncio.to_thread(
                    self.store.fetch_active, user_id, BackendKind.MANAGED
                )
                await self.backend.remove(user_id, reference)

        count = await asyncio.to_thread(self.store.delete, user_id)
        logger.info(f"User {user_id} opted out of face login ({count} record(s) removed)")
        return count

    async def aclose(self) -> None:
        await self.bridge.aclose()
        self.store.close()


async def build_components(
    config: Optional[Dict[str, Any]] = None,
    cipher: Optional[EnvelopeCipher] = None,
    store: Optional[CredentialStore] = None,
    backend: Optional[MatchingBackend] = None,
    recognition_service: Optional[RecognitionService] = None,
    bridge: Optional[SessionBridge] = None,
) -> FaceAuthComponents:
    """
    Build every collaborator from configuration. Any of them can be injected.

    The backend's one-time startup (collection setup for the managed
    backend) runs here, before any flow is handed out.
    """
    if config is None:
        config = get_config()

    if store is None:
        if cipher is None:
            cipher = EnvelopeCipher.from_config(config.get("encryption", {}))
        store = CredentialStore(config["storage"]["db_path"], cipher)

    if backend is None:
        kind = config.get("matching", {}).get("backend", BackendKind.LOCAL.value)
        backend = create_backend(kind, config, store, recognition_service=recognition_service)

    if bridge is None:
        bridge = SessionBridge.from_config(config["session"])

    try:
        await backend.start()
    except FaceAuthError as e:
        logger.error(f"Matching backend failed to start: {e.detail or e}")
        raise

    logger.info(f"Face authentication ready (backend={backend.kind.value})")

    return FaceAuthComponents(
        config=config,
        store=store,
        backend=backend,
        bridge=bridge,
        constraints=CaptureConstraints.from_config(config.get("capture", {})),
        settings=FlowSettings.from_config(config.get("flow", {})),
    )
