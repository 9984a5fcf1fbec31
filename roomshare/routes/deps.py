from fastapi import Request

from ..core import AppContext


def get_context(request: Request) -> AppContext:
    return request.app.state.context
