"""Provider lifecycle around orchestrator runs."""

from __future__ import annotations

import asyncio
from typing import Dict, Iterable, Optional, Tuple

from ..config import Settings
from ..errors import SyncCancelled
from ..lib.log import get_logger
from ..lib.timestamps import utcnow
from ..models import Conversation, Message, ProviderState, SyncResult
from ..protocols import ProgressSink, Provider, SyncStore
from ..services.attachments import AttachmentPrefetcher, AttachmentResolver
from ..types import ProviderName, ProviderStatus
from .cancellation import CancellationToken
from .orchestrator import SyncOrchestrator
from .retry import Sleep

logger = get_logger(__name__)


class SyncEngine:
    """Owns the providers, the store and the progress sink for a session.

    Each provider gets one orchestrator; runs of different providers may
    overlap, runs of the same provider never do.
    """

    def __init__(
        self,
        providers: Iterable[Provider],
        store: SyncStore,
        settings: Optional[Settings] = None,
        progress: Optional[ProgressSink] = None,
        *,
        cancel_token: Optional[CancellationToken] = None,
        sleep: Optional[Sleep] = None,
    ) -> None:
        self.settings = settings or Settings()
        self.store = store
        self.progress = progress
        self.cancel_token = cancel_token or CancellationToken()
        self.providers: Dict[ProviderName, Provider] = {provider.name: provider for provider in providers}
        self._orchestrators: Dict[ProviderName, SyncOrchestrator] = {}
        for name, provider in self.providers.items():
            prefetcher = AttachmentPrefetcher(
                AttachmentResolver(
                    self.settings.attachments_dir,
                    provider.download_file,
                    cancel_token=self.cancel_token,
                ),
                store,
                cancel_token=self.cancel_token,
            )
            self._orchestrators[name] = SyncOrchestrator(
                provider,
                store,
                settings=self.settings,
                progress=progress,
                cancel_token=self.cancel_token,
                sleep=sleep,
                prefetcher=prefetcher,
            )

    def orchestrator(self, name: ProviderName) -> SyncOrchestrator:
        try:
            return self._orchestrators[name]
        except KeyError:
            raise KeyError(f"No provider registered for {name}") from None

    def connected(self) -> list[ProviderName]:
        return [name for name, provider in self.providers.items() if provider.is_connected()]

    async def _set_state(self, name: ProviderName, **changes: object) -> ProviderState:
        state = await self.store.get_provider_state(name)
        state = state.model_copy(update=changes)
        await self.store.set_provider_state(state)
        return state

    async def run_sync(self, name: ProviderName, *, retry_failed: bool = False) -> SyncResult:
        """One orchestrator run wrapped in provider state transitions."""
        provider = self.providers[name]
        orchestrator = self.orchestrator(name)
        if not provider.is_connected():
            await self._set_state(name, status=ProviderStatus.DISCONNECTED, is_online=False)
            return SyncResult(success=False, error=f"{name} is not connected")
        if orchestrator.is_syncing:
            logger.info("sync_already_running", provider=name.value)
            return SyncResult(success=True, skipped=True)

        await self._set_state(name, status=ProviderStatus.SYNCING, is_online=True)
        try:
            if retry_failed:
                result = await orchestrator.retry_failed()
            else:
                result = await orchestrator.sync()
        except (SyncCancelled, asyncio.CancelledError):
            await self._set_state(name, status=ProviderStatus.CONNECTED)
            raise

        if result.skipped:
            return result
        if result.auth_failed:
            await self._set_state(
                name,
                status=ProviderStatus.LOGGED_OUT,
                is_online=False,
                error_message=result.error,
            )
        elif result.success:
            await self._set_state(
                name,
                status=ProviderStatus.CONNECTED,
                is_online=True,
                last_sync_at=utcnow(),
                error_message=None,
            )
        else:
            await self._set_state(name, status=ProviderStatus.TIMEOUT, error_message=result.error)
        logger.info(
            "provider_sync_finished",
            provider=name.value,
            success=result.success,
            new_chats_found=result.new_chats_found,
            failed=result.failed,
        )
        return result

    async def sync_all(
        self, names: Optional[Iterable[ProviderName]] = None, *, retry_failed: bool = False
    ) -> Dict[ProviderName, SyncResult]:
        """Sync the given (default: all connected) providers concurrently."""
        selected = list(names) if names is not None else self.connected()
        results = await asyncio.gather(
            *(self.run_sync(name, retry_failed=retry_failed) for name in selected)
        )
        return dict(zip(selected, results))

    async def retry_failed(self, name: ProviderName) -> SyncResult:
        return await self.run_sync(name, retry_failed=True)

    async def refresh_conversation(
        self, conversation_id: str
    ) -> Optional[Tuple[Conversation, list[Message]]]:
        stored = await self.store.get_conversation(conversation_id)
        if stored is None:
            return None
        return await self.orchestrator(stored.provider).refresh_conversation(conversation_id)

    def cancel(self, reason: str | None = None) -> None:
        self.cancel_token.cancel(reason)

    async def aclose(self) -> None:
        for orchestrator in self._orchestrators.values():
            await orchestrator.aclose()
        for provider in self.providers.values():
            await provider.aclose()


__all__ = ["SyncEngine"]
