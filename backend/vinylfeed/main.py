"""FastAPI application entrypoint."""

from __future__ import annotations

from contextlib import asynccontextmanager

import socketio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from vinylfeed.api import ops
from vinylfeed.api.errors import install_error_handlers
from vinylfeed.feed.api import router as feed_router
from vinylfeed.feed.sockets import namespace as feed_namespace
from vinylfeed.infra import pg_changes, postgres
from vinylfeed.obs import init as obs_init
from vinylfeed.settings import settings


@asynccontextmanager
async def lifespan(app: FastAPI):
	await postgres.init_pool()
	try:
		yield
	finally:
		namespace = feed_namespace.get_namespace()
		if namespace is not None:
			await namespace.close_sessions()
		await pg_changes.change_hub.close()
		await postgres.close_pool()


app = FastAPI(title="Vinylfeed Core", lifespan=lifespan)
install_error_handlers(app)

allow_origins = list(settings.cors_allow_origins) or ["http://localhost:3000"]
if "*" in allow_origins and not settings.is_dev():
	allow_origins = [origin for origin in allow_origins if origin != "*"]

app.add_middleware(
	CORSMiddleware,
	allow_origins=allow_origins,
	allow_credentials=True,
	allow_methods=["*"],
	allow_headers=["*"],
)

sio = socketio.AsyncServer(async_mode="asgi", cors_allowed_origins=allow_origins)
feed_namespace.register(sio)
socket_app = socketio.ASGIApp(sio, other_asgi_app=app)
obs_init(app)

app.include_router(ops.router)
app.include_router(feed_router)
