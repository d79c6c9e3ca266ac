"""hc-httpx: an async HTTP client with switchable interceptor policies."""

from hc_httpx.batch import BatchCoalescer, BatchOptions
from hc_httpx.cancellation import CancellationRegistry, CancelToken
from hc_httpx.chain import InterceptorChain, Interceptors
from hc_httpx.circuit_breaker import CircuitBreaker, CircuitBreakerOptions, CircuitState
from hc_httpx.client import ClientSnapshot, HttpClient
from hc_httpx.config import ClientConfig, ConfigError, load_config
from hc_httpx.dedupe import DedupeOptions, RequestDeduplicator
from hc_httpx.engine import HttpEngine
from hc_httpx.exceptions import (
    BatchItemError,
    CircuitBreakerOpenError,
    HcHttpxError,
    HTTPStatusError,
    NotFoundError,
    ProtocolError,
    RateLimitExceeded,
    RequestCancelledError,
    TransportError,
    TransportTimeoutError,
    ValidationError,
)
from hc_httpx.manager import ConditionalInterceptor, GroupChange, InterceptorManager, ManagerStatus
from hc_httpx.mocking import MockError, MockingTransport, MockRule
from hc_httpx.policies import (
    AuthOptions,
    CacheOptions,
    LoggingOptions,
    RateLimitOptions,
    RefreshOptions,
    RetryOptions,
    RetryStrategy,
    SmartTimeoutOptions,
    backoff,
)
from hc_httpx.request_queue import QueueOptions, RequestQueue, Settled, run_concurrent
from hc_httpx.transport import HttpxTransport, Transport
from hc_httpx.types import Phase, RequestConfig, Response

__all__ = [
    "AuthOptions",
    "BatchCoalescer",
    "BatchItemError",
    "BatchOptions",
    "CacheOptions",
    "CancelToken",
    "CancellationRegistry",
    "CircuitBreaker",
    "CircuitBreakerOpenError",
    "CircuitBreakerOptions",
    "CircuitState",
    "ClientConfig",
    "ClientSnapshot",
    "ConditionalInterceptor",
    "ConfigError",
    "DedupeOptions",
    "GroupChange",
    "HTTPStatusError",
    "HcHttpxError",
    "HttpClient",
    "HttpEngine",
    "HttpxTransport",
    "InterceptorChain",
    "InterceptorManager",
    "Interceptors",
    "LoggingOptions",
    "ManagerStatus",
    "MockError",
    "MockRule",
    "MockingTransport",
    "NotFoundError",
    "Phase",
    "ProtocolError",
    "QueueOptions",
    "RateLimitExceeded",
    "RateLimitOptions",
    "RefreshOptions",
    "RequestCancelledError",
    "RequestConfig",
    "RequestDeduplicator",
    "RequestQueue",
    "Response",
    "RetryOptions",
    "RetryStrategy",
    "Settled",
    "SmartTimeoutOptions",
    "Transport",
    "TransportError",
    "TransportTimeoutError",
    "ValidationError",
    "backoff",
    "load_config",
    "run_concurrent",
]
