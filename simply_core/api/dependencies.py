"""
Request dependencies: the wired system and the calling user
"""

from fastapi import Header, Request

from ..system import SimplySystem


def get_system(request: Request) -> SimplySystem:
    return request.app.state.system


def get_current_user_id(x_user_id: str = Header(..., alias="X-User-Id", min_length=1)) -> str:
    """User id asserted by the upstream authentication gateway"""
    return x_user_id
