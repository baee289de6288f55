"""Kubernetes log action: joins log lines split by the container runtime and adds pod meta."""

from __future__ import annotations

import logging
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Protocol

from .filecfg import FileConfig
from .k8s_meta import MetaStore

logger = logging.getLogger(__name__)

PREDICTION_LOOKAHEAD = 128 * 1024


@dataclass
class K8sConfig:
    """Settings of the Kubernetes input and its multiline action."""

    offsets_file: str
    max_event_size: int = 1000000
    allowed_pod_labels: list[str] = field(default_factory=list)
    allowed_node_labels: list[str] = field(default_factory=list)
    only_node: bool = False
    watching_dir: str = "/var/log/containers"
    file_config: FileConfig | Mapping[str, Any] | None = None

    def __post_init__(self) -> None:
        if not self.offsets_file:
            raise ValueError("offsets_file is required")
        self.watching_dir = self.watching_dir or "/var/log/containers"
        if not isinstance(self.file_config, FileConfig):
            settings = dict(self.file_config or {})
            settings.setdefault("watching_dir", self.watching_dir)
            settings.setdefault("offsets_file", self.offsets_file)
            self.file_config = FileConfig(**settings)


class ActionResult(Enum):
    """What the pipeline does with an event after the action."""

    PASS = auto()
    COLLAPSE = auto()
    DISCARD = auto()


class _Event(Protocol):
    root: MutableMapping[str, Any]
    source_name: str
    size: int

    def is_timeout_kind(self) -> bool: ...


class MultilineAction:
    """Joins split container logs of one stream and enriches the joined event with pod meta."""

    def __init__(
        self,
        config: K8sConfig,
        store: MetaStore,
        node_name: str = "",
        node_labels: Mapping[str, str] | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.node_name = node_name
        self.node_labels = dict(node_labels or {})
        self._allowed_pod_labels = frozenset(config.allowed_pod_labels)
        self._allowed_node_labels = frozenset(config.allowed_node_labels)
        self._log_buff: list[str] = []
        self._log_size = 0

    def do(self, event: _Event) -> ActionResult:
        """Collapse a log fragment or pass a complete log with meta fields added."""
        if event.is_timeout_kind():
            logger.error("can't read next sequential event for k8s pod stream")
            self._log_buff.clear()
            return ActionResult.DISCARD

        root = event.root
        root["k8s_node"] = self.node_name
        if self.config.only_node:
            return ActionResult.PASS

        fragment = root.get("log")
        if not isinstance(fragment, str):
            raise ValueError(f"wrong event format, it doesn't contain log field: {dict(root)!r}")

        # the runtime splits long logs into chunks; a lookahead keeps joined events under the limit
        self._log_size += event.size
        predicted = self._log_size + PREDICTION_LOOKAHEAD
        is_max_reached = predicted > self.config.max_event_size
        if not fragment.endswith("\n") and not is_max_reached:
            self._log_buff.append(fragment)
            return ActionResult.COLLAPSE

        ns, pod, container, _, pod_meta = self.store.get_meta(event.source_name)

        if is_max_reached:
            logger.warning(
                "too long k8s event found, it'll be split, ns=%s pod=%s container=%s "
                "consider increase max_event_size, max_event_size=%d, predicted event size=%d",
                ns, pod, container, self.config.max_event_size, predicted,
            )

        root["k8s_namespace"] = ns
        root["k8s_pod"] = pod
        root["k8s_container"] = container

        if pod_meta is not None:
            if ns != pod_meta.namespace:
                raise RuntimeError(
                    f"k8s plugin inconsistency: source={event.source_name}, "
                    f"file namespace={ns}, meta namespace={pod_meta.namespace}"
                )
            if pod != pod_meta.name:
                raise RuntimeError(
                    f"k8s plugin inconsistency: source={event.source_name}, "
                    f"file pod={pod}, meta pod={pod_meta.name}"
                )
            for name, value in pod_meta.labels.items():
                if self._allowed_pod_labels and name not in self._allowed_pod_labels:
                    continue
                root["k8s_pod_label_" + name] = value
            for name, value in self.node_labels.items():
                if self._allowed_node_labels and name not in self._allowed_node_labels:
                    continue
                root["k8s_node_label_" + name] = value

        joined = "".join(self._log_buff)
        if joined:
            root["log"] = joined + fragment
        self._log_buff.clear()
        self._log_size = 0

        return ActionResult.PASS