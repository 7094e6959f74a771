"""Provider adapters and the registry the facade selects them from."""

from __future__ import annotations

from typing import Any, Callable

from ..config import Settings
from ..models import Provider
from .gmail import GmailAdapter
from .graph import GraphAdapter

AdapterFactory = Callable[[], Any]


def default_adapter_factories(settings: Settings) -> dict[Provider, AdapterFactory]:
    return {
        Provider.GMAIL: lambda: GmailAdapter(num_retries=settings.rate_limit_retries),
        Provider.MICROSOFT: lambda: GraphAdapter(
            page_size=settings.graph_page_size,
            timeout=settings.request_timeout,
            rate_limit_retries=settings.rate_limit_retries,
        ),
    }


__all__ = ["AdapterFactory", "GmailAdapter", "GraphAdapter", "default_adapter_factories"]
