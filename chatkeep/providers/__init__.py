"""Remote fetchers, one per hosted chat service."""

from __future__ import annotations

from typing import Callable, Dict, Iterable, List, Optional

from ..config import Settings
from ..types import ProviderName
from .base import HttpProvider
from .chatgpt import ChatGPTProvider
from .claude import ClaudeProvider
from .perplexity import PerplexityProvider

PROVIDER_FACTORIES: Dict[ProviderName, Callable[[Settings], HttpProvider]] = {
    ProviderName.CHATGPT: lambda s: ChatGPTProvider(s.chatgpt, timeout=s.request_timeout),
    ProviderName.CLAUDE: lambda s: ClaudeProvider(s.claude, timeout=s.request_timeout),
    ProviderName.PERPLEXITY: lambda s: PerplexityProvider(s.perplexity, timeout=s.request_timeout),
}


def build_providers(settings: Settings, names: Optional[Iterable[ProviderName]] = None) -> List[HttpProvider]:
    """Instantiate the enabled providers (or exactly ``names`` when given)."""
    selected = list(names) if names is not None else [
        name for name in ProviderName if settings.provider_settings(name).enabled
    ]
    return [PROVIDER_FACTORIES[name](settings) for name in selected]


__all__ = [
    "HttpProvider",
    "ChatGPTProvider",
    "ClaudeProvider",
    "PerplexityProvider",
    "PROVIDER_FACTORIES",
    "build_providers",
]
