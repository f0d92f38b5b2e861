"""Vendor integrations, one per service process."""

from __future__ import annotations

from genagent.config import Config
from genagent.vendors.base import GenerationRequest, Integration
from genagent.vendors.chatgpt import ChatGPTIntegration
from genagent.vendors.ideogram import IdeogramIntegration
from genagent.vendors.midjourney import MidjourneyIntegration
from genagent.vendors.veo import VeoIntegration

INTEGRATIONS: dict[str, type[Integration]] = {
    cls.name: cls
    for cls in (ChatGPTIntegration, MidjourneyIntegration, VeoIntegration, IdeogramIntegration)
}


def get_integration(name: str, config: Config, **kwargs) -> Integration:
    """Instantiate the integration registered under `name`. Raises KeyError if unknown."""
    try:
        cls = INTEGRATIONS[name]
    except KeyError:
        raise KeyError(f"Unknown integration: {name}") from None
    return cls(config, **kwargs)


__all__ = ["INTEGRATIONS", "GenerationRequest", "Integration", "get_integration"]
