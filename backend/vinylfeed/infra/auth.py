"""Caller identity for FastAPI endpoints.

Sign-in happens upstream; the gateway forwards the authenticated user id in
``X-User-Id``.
"""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import Header, HTTPException, status

from vinylfeed.obs.logging import bind_context


@dataclass(slots=True)
class AuthenticatedUser:
	id: str


async def get_current_user(x_user_id: str | None = Header(default=None)) -> AuthenticatedUser:
	user_id = (x_user_id or "").strip()
	if not user_id:
		raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="missing_user")
	bind_context(user_id=user_id)
	return AuthenticatedUser(id=user_id)


__all__ = ["AuthenticatedUser", "get_current_user"]
