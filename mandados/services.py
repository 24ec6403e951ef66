"""
Wiring of the dispatch core. One Services instance per process, built from settings
on first use and torn down by the app lifespan.
"""
import logging
from dataclasses import dataclass

from mandados.auth import Authenticator, RedisTokenAuthenticator, StaticAuthenticator
from mandados.config import Settings, settings
from mandados.db import PostgresOrderStore, close_pool, get_pool, init_schema
from mandados.events import EventBus
from mandados.lifecycle import OrderLifecycle
from mandados.locations import LocationBackend, LocationRegistry, MemoryLocationBackend, RedisLocationBackend
from mandados.notifier import ConnectionRegistry, LocalConnectionRegistry
from mandados.redis_client import close_redis, get_redis
from mandados.store import MemoryOrderStore, OrderStore
from mandados.subscribers import AuditLogSubscriber, DispatchSubscriber, MetricsSubscriber
from mandados.tracking import TrackingAggregator

logger = logging.getLogger(__name__)


@dataclass
class Services:
    store: OrderStore
    locations: LocationRegistry
    registry: ConnectionRegistry
    events: EventBus
    lifecycle: OrderLifecycle
    tracking: TrackingAggregator
    authenticator: Authenticator


def build_services(
    store: OrderStore,
    location_backend: LocationBackend,
    authenticator: Authenticator,
    cfg: Settings = settings,
    registry: ConnectionRegistry | None = None,
) -> Services:
    locations = LocationRegistry(
        location_backend,
        stale_after_seconds=cfg.location_stale_after_seconds,
        active_window_seconds=cfg.courier_active_window_seconds,
    )
    if registry is None:
        registry = LocalConnectionRegistry(
            unavailable=locations.unavailable_among,
            queue_size=cfg.session_queue_size,
        )
    events = EventBus([DispatchSubscriber(registry), MetricsSubscriber(), AuditLogSubscriber()])
    lifecycle = OrderLifecycle(store, events, locations, min_offered_price=cfg.min_offered_price)
    tracking = TrackingAggregator(
        store,
        locations,
        speed_kmh=cfg.average_speed_kmh,
        min_eta_minutes=cfg.min_eta_minutes,
    )
    return Services(
        store=store,
        locations=locations,
        registry=registry,
        events=events,
        lifecycle=lifecycle,
        tracking=tracking,
        authenticator=authenticator,
    )


_services: Services | None = None


async def _build_from_settings(cfg: Settings) -> Services:
    if cfg.store_backend == "postgres":
        pool = await get_pool()
        await init_schema(pool)
        store: OrderStore = PostgresOrderStore(pool)
    elif cfg.store_backend == "memory":
        store = MemoryOrderStore()
    else:
        raise ValueError(f"unknown store_backend {cfg.store_backend!r}")

    if cfg.location_backend == "redis":
        location_backend: LocationBackend = RedisLocationBackend(await get_redis())
    elif cfg.location_backend == "memory":
        location_backend = MemoryLocationBackend()
    else:
        raise ValueError(f"unknown location_backend {cfg.location_backend!r}")

    if cfg.auth_backend == "redis":
        authenticator: Authenticator = RedisTokenAuthenticator(await get_redis(), cfg.auth_token_prefix)
    elif cfg.auth_backend == "static":
        authenticator = StaticAuthenticator(cfg.static_tokens)
    else:
        raise ValueError(f"unknown auth_backend {cfg.auth_backend!r}")

    logger.info(
        "Services ready (store=%s, locations=%s, auth=%s)",
        cfg.store_backend,
        cfg.location_backend,
        cfg.auth_backend,
    )
    return build_services(store, location_backend, authenticator, cfg)


async def get_services() -> Services:
    global _services
    if _services is None:
        _services = await _build_from_settings(settings)
    return _services


def set_services(services: Services | None) -> None:
    global _services
    _services = services


async def close_services() -> None:
    global _services
    if _services is not None:
        await _services.registry.close()
        _services = None
    await close_pool()
    await close_redis()
