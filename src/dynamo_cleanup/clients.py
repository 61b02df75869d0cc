"""Lazily created boto3 clients with support for injected test doubles."""

from __future__ import annotations

import logging
from typing import Any

import boto3

logger = logging.getLogger(__name__)


class AwsClients:
    """Holds one boto3 client per service for a single region.

    Pass ``overrides`` (service name -> client) to replace real clients,
    e.g. with dummies in unit tests.
    """

    def __init__(
        self,
        region: str,
        session: boto3.session.Session | None = None,
        overrides: dict[str, Any] | None = None,
    ):
        self.region = region
        self._session = session
        self._clients: dict[str, Any] = dict(overrides or {})

    @property
    def session(self) -> boto3.session.Session:
        """Lazy-loaded boto3 session."""
        if self._session is None:
            self._session = boto3.session.Session(region_name=self.region)
        return self._session

    def get(self, service: str) -> Any:
        if service not in self._clients:
            logger.debug("Creating %s client in %s", service, self.region)
            self._clients[service] = self.session.client(service, region_name=self.region)
        return self._clients[service]

    def __getitem__(self, service: str) -> Any:
        return self.get(service)


def paginate(client: Any, operation: str, result_key: str, **kwargs: Any) -> list:
    """Collect ``result_key`` items across every page of ``operation``."""
    items: list = []
    paginator = client.get_paginator(operation)
    for page in paginator.paginate(**kwargs):
        items.extend(page.get(result_key, []) or [])
    return items
