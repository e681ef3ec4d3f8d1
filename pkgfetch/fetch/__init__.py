from . errors import *
from . http_clients import (HttpClientFactory, DomainClientProducer, DomainAuth, DEFAULT_TIMEOUT_SECONDS, 
                            default_client_factory, make_domain_client_producer, auth_headers_for, url_domain)
from . results import PartResult, PartResultCollector
from . fetch_parts import fetch_pkg_part, verify_pkg_part, fetch_and_verify_parts, DEFAULT_PART_WORKERS
from . fetch import pkg_fetch, pkg_fetch_sync, fetch_pkg_meta, fetch_pkg_content, precheck_pkg_parts, load_keyset
