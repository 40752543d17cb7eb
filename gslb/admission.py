#!/usr/bin/env python3
# Copyright (C) 2019 Checkmk GmbH - License: GNU General Public License v2
# This file is part of Checkmk (https://checkmk.com). It is subject to the terms and
# conditions defined in the file COPYING, which is part of this source code package.
"""Admission filter deciding which objects take part in global load balancing"""

from __future__ import annotations

import threading
from collections.abc import Mapping
from logging import Logger
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel

from .metadata import NamespaceMeta, TrafficMetadata


class AdmissionFilter(Protocol):
    def apply_filter(self, meta: TrafficMetadata, cluster: str) -> bool:
        ...


class NamespaceFilter(Protocol):
    """The namespace membership is configuration owned by the filter"""

    def apply_namespace(self, meta: NamespaceMeta) -> bool:
        ...

    def update_filter(self, old_meta: NamespaceMeta, new_meta: NamespaceMeta) -> bool:
        ...

    def delete_from_filter(self, meta: NamespaceMeta) -> bool:
        ...


class FilterConfig(BaseModel, frozen=True):
    namespace_selector: dict[str, str] = {}
    app_selector: dict[str, str] = {}
    # An empty list admits objects of all member clusters.
    clusters: list[str] = []


DEFAULT_CONFIG = FilterConfig()


def read_config(path: Path | None) -> FilterConfig:
    if path is None:
        return DEFAULT_CONFIG
    return FilterConfig.model_validate_json(path.read_text(encoding="utf-8"))


def matches_selector(labels: Mapping[str, str], selector: Mapping[str, str]) -> bool:
    return all(labels.get(key) == value for key, value in selector.items())


class SelectorFilter:
    """Equality based label selectors for namespaces and applications

    Objects are admitted if their namespace is currently selected in their
    cluster and their own labels match the application selector. Without a
    namespace selector every namespace is selected.
    """

    def __init__(self, config: FilterConfig, logger: Logger) -> None:
        self._config = config
        self._logger = logger
        self._lock = threading.Lock()
        self._selected_namespaces: dict[str, set[str]] = {}

    @property
    def config(self) -> FilterConfig:
        return self._config

    def _cluster_allowed(self, cluster: str) -> bool:
        return not self._config.clusters or cluster in self._config.clusters

    def _namespace_matches(self, meta: NamespaceMeta) -> bool:
        return self._cluster_allowed(meta.cluster) and matches_selector(
            meta.labels, self._config.namespace_selector
        )

    def is_namespace_selected(self, cluster: str, namespace: str) -> bool:
        if not self._config.namespace_selector:
            return True
        with self._lock:
            return namespace in self._selected_namespaces.get(cluster, ())

    def apply_filter(self, meta: TrafficMetadata, cluster: str) -> bool:
        if not self._cluster_allowed(cluster):
            return False
        if not self.is_namespace_selected(cluster, meta.namespace):
            return False
        return matches_selector(meta.labels, self._config.app_selector)

    def apply_namespace(self, meta: NamespaceMeta) -> bool:
        accepted = self._namespace_matches(meta)
        with self._lock:
            selected = self._selected_namespaces.setdefault(meta.cluster, set())
            if accepted:
                selected.add(meta.name)
            else:
                selected.discard(meta.name)
        return accepted

    def update_filter(self, old_meta: NamespaceMeta, new_meta: NamespaceMeta) -> bool:
        """Returns True if the namespace changed its selection state"""
        accepted = self._namespace_matches(new_meta)
        with self._lock:
            selected = self._selected_namespaces.setdefault(new_meta.cluster, set())
            was_selected = old_meta.name in selected
            selected.discard(old_meta.name)
            if accepted:
                selected.add(new_meta.name)
        if was_selected != accepted:
            self._logger.info(
                "cluster: %s, ns: %s, msg: namespace %s the filter",
                new_meta.cluster,
                new_meta.name,
                "entered" if accepted else "left",
            )
            return True
        return False

    def delete_from_filter(self, meta: NamespaceMeta) -> bool:
        with self._lock:
            selected = self._selected_namespaces.get(meta.cluster, set())
            if meta.name not in selected:
                return False
            selected.discard(meta.name)
        return True
