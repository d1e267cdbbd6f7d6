"""
API Dependencies - 路由共用的依賴
"""
from fastapi import Request

from ntpu_assistant.services.container import ServiceContainer


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container
