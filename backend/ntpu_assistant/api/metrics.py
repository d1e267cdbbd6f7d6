"""
Metrics API - Prometheus 指標輸出
設定 METRICS_PASSWORD 時需要 Basic Auth
"""
import secrets

from fastapi import APIRouter, Depends, HTTPException, Response
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from ntpu_assistant.api.deps import get_container
from ntpu_assistant.services.container import ServiceContainer
from ntpu_assistant.services.metrics import CONTENT_TYPE_LATEST

router = APIRouter(tags=["metrics"])

_basic = HTTPBasic(auto_error=False)


def require_metrics_auth(
    credentials: HTTPBasicCredentials = Depends(_basic),
    container: ServiceContainer = Depends(get_container),
) -> None:
    password = container.settings.METRICS_PASSWORD
    if not password:
        return
    if credentials is None:
        raise HTTPException(status_code=401, detail="authentication required",
                            headers={"WWW-Authenticate": 'Basic realm="metrics"'})
    user_ok = secrets.compare_digest(credentials.username.encode("utf-8"),
                                     container.settings.METRICS_USERNAME.encode("utf-8"))
    pass_ok = secrets.compare_digest(credentials.password.encode("utf-8"), password.encode("utf-8"))
    if not (user_ok and pass_ok):
        raise HTTPException(status_code=401, detail="invalid credentials",
                            headers={"WWW-Authenticate": 'Basic realm="metrics"'})


@router.get("/metrics", dependencies=[Depends(require_metrics_auth)])
async def metrics(container: ServiceContainer = Depends(get_container)):
    return Response(content=container.metrics.render(), media_type=CONTENT_TYPE_LATEST)
