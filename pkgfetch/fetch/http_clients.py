import logging
from typing import Callable
import httpx

logger = logging.getLogger(__name__)

# The pipeline never constructs HTTP clients itself, it asks a factory for them.
# - HttpClientFactory: takes an optional timeout override (e.g., longer timeouts for big parts than for metadata)
# - DomainClientProducer: produces a client configured for a given source domain (e.g., with auth headers)
# Clients are used as async context managers and closed after each request.

HttpClientFactory = Callable[[float | None], httpx.AsyncClient]
DomainClientProducer = Callable[[str], httpx.AsyncClient]
DomainAuth = dict[str, dict[str, str]] # domain -> header name -> header value

DEFAULT_TIMEOUT_SECONDS = 10.0

def default_client_factory(timeout_seconds:float|None=None) -> httpx.AsyncClient:
    if timeout_seconds is None:
        timeout_seconds = DEFAULT_TIMEOUT_SECONDS
    return httpx.AsyncClient(timeout=timeout_seconds, follow_redirects=True)

def url_domain(url:str) -> str:
    """The domain of a url, as 'host' or 'host:port' if the url has an explicit port."""
    url = httpx.URL(url)
    return f"{url.host}:{url.port}" if url.port else url.host

def auth_headers_for(url_or_domain:str, per_domain_auth:DomainAuth|None) -> dict[str, str]:
    """Finds the auth headers for a url (or a bare domain). Entries can be keyed by 'host:port' or by 'host'."""
    if not per_domain_auth:
        return {}
    if "://" in url_or_domain:
        url = httpx.URL(url_or_domain)
        candidates = [f"{url.host}:{url.port}" if url.port else None, url.host]
    else:
        candidates = [url_or_domain, url_or_domain.split(":")[0]]
    for candidate in candidates:
        if candidate and candidate in per_domain_auth:
            return dict(per_domain_auth[candidate])
    return {}

def make_domain_client_producer(
        client_factory:HttpClientFactory,
        per_domain_auth:DomainAuth|None=None,
        timeout_seconds:float|None=None,
        ) -> DomainClientProducer:
    """Wraps a client factory so that every client it produces carries the auth headers of its domain."""
    def producer(domain:str) -> httpx.AsyncClient:
        client = client_factory(timeout_seconds)
        headers = auth_headers_for(domain, per_domain_auth)
        if headers:
            logger.debug(f"Adding auth headers {list(headers.keys())} to client for domain {domain}")
            client.headers.update(headers)
        return client
    return producer
