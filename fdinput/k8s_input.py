"""Kubernetes input: reads container log files and gathers pod meta for them."""

from __future__ import annotations

import logging
from typing import Any

from .file_input import FileInput
from .filecfg import FileConfig
from .k8s_meta import MetaStore
from .multiline import K8sConfig

logger = logging.getLogger(__name__)

DECODER_JSON = "json"
DECODER_CRI = "cri"

_DOCKER = "docker"


class K8sInput:
    """Collects container logs with a file input and keeps the pod meta store up to date.

    Docker writes its logs as JSON lines, other runtimes use the CRI format,
    so the decoder suggested to the pipeline follows the runtime type.
    """

    def __init__(self, store: MetaStore, cri_type: str = _DOCKER) -> None:
        self.store = store
        self.cri_type = cri_type
        self.config: K8sConfig | None = None
        self.file_input: FileInput | None = None

    def start(self, config: K8sConfig, controller: Any, pipeline_name: str) -> None:
        """Start gathering meta, suggest a decoder and start reading the log files."""
        self.config = config

        # the store keeps one maintenance task however many inputs use it
        self.store.start_maintenance()

        decoder = DECODER_JSON if self.cri_type == _DOCKER else DECODER_CRI
        controller.suggest_decoder(decoder)

        file_config = config.file_config
        if not isinstance(file_config, FileConfig):
            raise TypeError(f"file_config must be a FileConfig, got {type(file_config).__name__}")

        self.file_input = FileInput()
        self.file_input.start(file_config, controller, pipeline_name)

    def commit(self, event: Any) -> None:
        """Remember the offset of a processed event."""
        if self.file_input is None:
            raise RuntimeError("k8s input isn't started")
        self.file_input.commit(event)

    def stop(self) -> None:
        """Stop reading the log files; the last offsets are saved."""
        if self.file_input is None:
            return
        self.file_input.stop()