"""Kubernetes pod meta-information: log filename parsing and a store of pod data by container."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

FORMAT_INFO = (
    "make sure source file has name format: "
    "[pod-name]_[namespace]_[container-name]-[container id].log"
)

_CONTAINER_ID_LEN = 64
_BLACKLIST_LIMIT = 32


class LogFilenameError(ValueError):
    """The log filename doesn't follow the Kubernetes container log format."""


class ContainerIDError(ValueError):
    """A container id of a pod status isn't of the ``XXXX://ID`` form."""


@dataclass(frozen=True)
class MetaItem:
    """Address of one container in the meta store."""

    namespace: str = ""
    pod_name: str = ""
    container_id: str = ""
    node_name: str = ""
    container_name: str = ""


@dataclass
class PodMeta:
    """Pod data as returned by the Kubernetes API and the time it was stored."""

    pod: Mapping[str, Any]
    update_time: float = field(default_factory=time.monotonic)

    @property
    def _metadata(self) -> Mapping[str, Any]:
        return self.pod.get("metadata") or {}

    @property
    def name(self) -> str:
        return self._metadata.get("name", "")

    @property
    def namespace(self) -> str:
        return self._metadata.get("namespace", "")

    @property
    def labels(self) -> Mapping[str, str]:
        return self._metadata.get("labels") or {}


def _bad_filename(message: str) -> LogFilenameError:
    logger.info(FORMAT_INFO)
    return LogFilenameError(f"{message}; {FORMAT_INFO}")


def parse_log_filename(full_filename: str) -> tuple[str, str, str, str]:
    """Split a container log path into namespace, pod, container name and container id."""
    if not full_filename.endswith(".log"):
        raise _bad_filename(f"wrong log file name, no .log at ending {full_filename}")
    last_slash = full_filename.rfind("/")
    if last_slash < 0:
        raise _bad_filename(f"wrong log file name {full_filename}, no slashes")
    filename = full_filename[last_slash + 1:-4]
    if not filename:
        raise _bad_filename(f"wrong log file name, empty: {full_filename}")

    pod, sep, filename = filename.partition("_")
    if not sep:
        raise _bad_filename(f"wrong log file name, no underscore for pod: {pod}")

    ns, sep, rest = filename.partition("_")
    if not sep:
        raise _bad_filename(f"wrong log file name, no underscore for ns: {filename}")

    if len(rest) < _CONTAINER_ID_LEN + 1:
        raise _bad_filename(f"wrong log file name, not enough chars: {rest}")

    container = rest[:-(_CONTAINER_ID_LEN + 1)]
    cid = rest[-_CONTAINER_ID_LEN:]
    return ns, pod, container, cid


def _container_id(full_container_id: str) -> str:
    pos = full_container_id.find(":")
    if pos <= 0 or pos + 3 >= len(full_container_id) or full_container_id[pos:pos + 3] != "://":
        raise ContainerIDError(f"container id should have format XXXX://ID: {full_container_id}")
    cid = full_container_id[pos + 3:]
    if len(cid) != _CONTAINER_ID_LEN:
        raise ContainerIDError(f"wrong container id: {full_container_id}")
    return cid


class MetaStore:
    """Pod meta-information by namespace, pod name and container id, expiring when not refreshed."""

    def __init__(
        self,
        expire_duration: float = 300.0,
        maintenance_interval: float = 15.0,
        wait_timeout: float = 60.0,
    ) -> None:
        self.expire_duration = expire_duration
        self.maintenance_interval = maintenance_interval
        self.wait_timeout = wait_timeout
        self.recheck_interval = 0.25
        self.wait_warn = 5.0

        self.meta: dict[str, dict[str, dict[str, PodMeta]]] = {}
        self.blacklist: set[str] = set()
        self.added_count = 0
        self.expired_count = 0

        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def put_meta(self, pod: Mapping[str, Any]) -> None:
        """Store a pod for each of its containers, current and last terminated."""
        status = pod.get("status") or {}
        statuses = status.get("containerStatuses") or []
        if not statuses:
            return

        metadata = pod.get("metadata") or {}
        ns = metadata.get("namespace", "")
        name = metadata.get("name", "")

        with self._lock:
            self.meta.setdefault(ns, {}).setdefault(name, {})

        for container_status in [*statuses, *(status.get("initContainerStatuses") or [])]:
            self._put_container_meta(ns, name, container_status.get("containerID", ""), pod)
            terminated = (container_status.get("lastState") or {}).get("terminated")
            if terminated:
                self._put_container_meta(ns, name, terminated.get("containerID", ""), pod)

        with self._lock:
            self.added_count += 1

    def _put_container_meta(self, ns: str, pod_name: str, full_container_id: str, pod: Mapping[str, Any]) -> None:
        if not full_container_id:
            return
        cid = _container_id(full_container_id)
        item = PodMeta(pod=pod)
        with self._lock:
            self.meta.setdefault(ns, {}).setdefault(pod_name, {})[cid] = item

    def get_meta(self, full_filename: str) -> tuple[str, str, str, str, PodMeta | None]:
        """Find the pod of a log file, waiting for it to appear.

        Returns namespace, pod, container name, container id and the pod meta,
        which is ``None`` if the pod is blacklisted or didn't appear in time;
        a pod that times out is blacklisted.
        """
        ns, pod, container, cid = parse_log_filename(full_filename)

        waited = 0.0
        while True:
            with self._lock:
                found = self.meta.get(ns, {}).get(pod, {}).get(cid)
                blacklisted = pod in self.blacklist

            if found is not None:
                if waited >= self.wait_warn:
                    logger.warning(
                        "meta retrieved with delay time=%dms pod=%s container=%s",
                        int(waited * 1000), pod, cid,
                    )
                return ns, pod, container, cid, found

            if blacklisted:
                return ns, pod, container, cid, None

            time.sleep(self.recheck_interval)
            waited += self.recheck_interval

            if waited >= self.wait_timeout:
                with self._lock:
                    if len(self.blacklist) > _BLACKLIST_LIMIT:
                        self.blacklist = set()
                    self.blacklist.add(pod)
                logger.error(
                    "pod %r have blacklisted, cause k8s meta retrieve timeout ns=%s container=%s cid=%s",
                    pod, ns, container, cid,
                )
                return ns, pod, container, cid, None

    def _expired_items(self) -> list[MetaItem]:
        now = time.monotonic()
        with self._lock:
            return [
                MetaItem(namespace=ns, pod_name=pod, container_id=cid)
                for ns, pods in self.meta.items()
                for pod, containers in pods.items()
                for cid, data in containers.items()
                if now - data.update_time > self.expire_duration
            ]

    def _clean_up(self, items: list[MetaItem]) -> None:
        with self._lock:
            for item in items:
                self.expired_count += 1
                pods = self.meta.get(item.namespace)
                if pods is None:
                    continue
                containers = pods.get(item.pod_name)
                if containers is not None:
                    containers.pop(item.container_id, None)
                    if not containers:
                        del pods[item.pod_name]
                if not pods:
                    del self.meta[item.namespace]

    def remove_expired(self) -> int:
        """Drop containers not refreshed within the expire duration; return how many."""
        items = self._expired_items()
        self._clean_up(items)

        if self.maintenance_interval > 1:
            logger.info(
                "k8s meta stat for last %d seconds: total=%d, updated=%d, expired=%d",
                int(self.maintenance_interval), self.total_items(), self.added_count, self.expired_count,
            )
        with self._lock:
            self.added_count = 0
            self.expired_count = 0
        return len(items)

    def total_items(self) -> int:
        """Number of stored containers."""
        with self._lock:
            return sum(len(containers) for pods in self.meta.values() for containers in pods.values())

    def start_maintenance(self) -> None:
        """Remove expired items periodically in the background."""
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._maintain, name="k8s-meta-maintenance", daemon=True)
        self._thread.start()

    def _maintain(self) -> None:
        while not self._stop.wait(self.maintenance_interval):
            self.remove_expired()

    def stop_maintenance(self) -> None:
        """Stop the background maintenance and wait for it."""
        thread, self._thread = self._thread, None
        if thread is None:
            return
        self._stop.set()
        thread.join()