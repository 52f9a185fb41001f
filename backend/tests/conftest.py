import sys
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from fakeredis.aioredis import FakeRedis

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

from vinylfeed.infra import postgres
from vinylfeed.main import app
from vinylfeed.settings import settings


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	from vinylfeed.infra.redis import redis_client, set_redis_client

	original = redis_client.client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		set_redis_client(original)
		await client.flushall()


@pytest.fixture(autouse=True)
def patch_postgres(monkeypatch):
	async def _noop():
		return None

	monkeypatch.setattr(postgres, "init_pool", _noop)
	monkeypatch.setattr(postgres, "close_pool", _noop)


@pytest.fixture(autouse=True)
def force_test_settings():
	"""Pin the knobs the core behaviour tests are written against."""
	original = (
		settings.environment,
		settings.feed_follow_cap,
		settings.store_in_clause_limit,
		settings.initial_page_size,
		settings.load_more_page_size,
		settings.snapshot_poll_interval_seconds,
	)
	settings.environment = "dev"
	settings.feed_follow_cap = 10
	settings.store_in_clause_limit = 30
	settings.initial_page_size = 20
	settings.load_more_page_size = 15
	settings.snapshot_poll_interval_seconds = 0.01
	try:
		yield
	finally:
		(
			settings.environment,
			settings.feed_follow_cap,
			settings.store_in_clause_limit,
			settings.initial_page_size,
			settings.load_more_page_size,
			settings.snapshot_poll_interval_seconds,
		) = original


@pytest_asyncio.fixture
async def api_client():
	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://testserver") as client:
		yield client
