"""
RentCore 应用入口：FastAPI 应用实例、路由注册、生命周期、业务异常处理。
"""

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from rentcore.errors import BusinessError

load_dotenv()

# 日志配置
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    force=True,
)

logger = logging.getLogger(__name__)


# ── Lifespan ──────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期：启动时初始化数据库。"""
    from rentcore.database import init_db

    init_db()
    if os.environ.get("TESTING") != "1":
        logger.info("数据库初始化完成")

    yield


app = FastAPI(title="RentCore", description="设备租赁订单与授信服务", lifespan=lifespan)


# ── 业务异常 ──────────────────────────────────────────────

@app.exception_handler(BusinessError)
async def business_error_handler(request: Request, exc: BusinessError):
    if exc.status_code >= 500:
        logger.error("业务异常: %s %s -> %s", request.method, request.url.path, exc)
    else:
        logger.info("业务异常: %s %s -> %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ── 路由注册 ──────────────────────────────────────────────

from rentcore.routes.address import router as address_router
from rentcore.routes.credits import router as credits_router
from rentcore.routes.orders import router as orders_router
from rentcore.routes.payments import router as payments_router
from rentcore.routes.shipping import router as shipping_router

app.include_router(orders_router)
app.include_router(payments_router)
app.include_router(shipping_router)
app.include_router(credits_router)
app.include_router(address_router)


# ── 健康检查 ──────────────────────────────────────────────

@app.get("/health")
async def health_check():
    return {"status": "ok"}
