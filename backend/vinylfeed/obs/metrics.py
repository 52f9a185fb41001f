"""Central registry for Prometheus metrics used across the backend."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram


REQUEST_COUNTER = Counter(
	"vinylfeed_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"vinylfeed_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

SOCKET_CLIENTS = Gauge(
	"vinylfeed_socketio_clients",
	"Active Socket.IO clients per namespace",
	["namespace"],
)

SOCKET_EVENTS = Counter(
	"vinylfeed_socketio_events_total",
	"Socket.IO events emitted per namespace",
	["namespace", "event"],
)

FEED_PAGES_BUILT = Counter(
	"vinylfeed_feed_pages_total",
	"Fan-out feed pages built",
	["result"],
)

FEED_BATCH_QUERIES = Counter(
	"vinylfeed_feed_batch_queries_total",
	"Per-batch author queries issued by the fan-out builder",
)

FEED_HYDRATION_DROPS = Counter(
	"vinylfeed_feed_hydration_drops_total",
	"Feed items dropped because author or subject could not be resolved",
	["reason"],
)

PAGER_SUPPRESSED = Counter(
	"vinylfeed_pager_suppressed_total",
	"Page loads skipped because another load for the scope was in flight",
)

SUBSCRIPTIONS_ACTIVE = Gauge(
	"vinylfeed_subscriptions_active",
	"Live subscription handles currently open",
)

SUBSCRIPTION_TRANSITIONS = Counter(
	"vinylfeed_subscription_transitions_total",
	"Subscription state transitions",
	["state"],
)

SUBSCRIPTION_DISPATCH = Counter(
	"vinylfeed_subscription_dispatch_total",
	"Change events dispatched to subscribers",
	["mode"],
)

CASCADE_DELETES = Counter(
	"vinylfeed_cascade_deletes_total",
	"Cascade delete outcomes",
	["result"],
)

NOTIFICATION_INSERT = Counter(
	"vinylfeed_notification_insert_total",
	"Notification inserts by outcome",
	["result"],
)


def observe_request(route: str, method: str, status: int, elapsed_seconds: float) -> None:
	REQUEST_COUNTER.labels(route=route, method=method, status=str(status)).inc()
	REQUEST_LATENCY.labels(route=route, method=method).observe(elapsed_seconds)


def socket_connected(namespace: str) -> None:
	SOCKET_CLIENTS.labels(namespace=namespace).inc()


def socket_disconnected(namespace: str) -> None:
	SOCKET_CLIENTS.labels(namespace=namespace).dec()


def socket_event(namespace: str, event: str) -> None:
	SOCKET_EVENTS.labels(namespace=namespace, event=event).inc()


def feed_page_built(result: str) -> None:
	FEED_PAGES_BUILT.labels(result=result).inc()


def feed_batch_query() -> None:
	FEED_BATCH_QUERIES.inc()


def feed_hydration_drop(reason: str) -> None:
	FEED_HYDRATION_DROPS.labels(reason=reason).inc()


def pager_suppressed() -> None:
	PAGER_SUPPRESSED.inc()


def subscription_opened() -> None:
	SUBSCRIPTIONS_ACTIVE.inc()


def subscription_finished() -> None:
	SUBSCRIPTIONS_ACTIVE.dec()


def subscription_transition(state: str) -> None:
	SUBSCRIPTION_TRANSITIONS.labels(state=state).inc()


def subscription_dispatch(mode: str) -> None:
	SUBSCRIPTION_DISPATCH.labels(mode=mode).inc()


def cascade_delete(result: str) -> None:
	CASCADE_DELETES.labels(result=result).inc()


def notification_persisted(result: str) -> None:
	NOTIFICATION_INSERT.labels(result=result).inc()
