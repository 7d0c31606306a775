from __future__ import annotations

import logging
from typing import Any

from cursor_core.config import BridgeConfig

from cursor_bridge.services.chat_service import ChatCompletionService, CommandRunner, ModelPinning
from cursor_bridge.services.model_catalog_service import ModelCatalogService, ModelLister


class BridgeState:
    """Per-instance state shared by all requests of one bridge app."""

    def __init__(
        self,
        *,
        config: BridgeConfig,
        version: str,
        logger: logging.Logger,
        runner: CommandRunner | None = None,
        model_lister: ModelLister | None = None,
    ) -> None:
        self.config = config
        self.version = version
        self.model_catalog_service = ModelCatalogService(
            agent_bin=config.agent_bin,
            logger=logger,
            lister=model_lister,
        )
        chat_kwargs: dict[str, Any] = {"config": config, "logger": logger, "pinning": ModelPinning()}
        if runner is not None:
            chat_kwargs["runner"] = runner
        self.chat_service = ChatCompletionService(**chat_kwargs)

    def health_payload(self) -> dict[str, Any]:
        return {"ok": True, "version": self.version, **self.config.summary()}
