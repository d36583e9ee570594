# backend/main.py
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings
from database import init_db
from services.errors import DomainError

# Routers
from routes.auth import router as auth_router
from routes.cart import router as cart_router
from routes.orders import router as orders_router
from routes.payment import router as payment_router
from routes.products import router as products_router
from routes.shipping import router as shipping_router
from routes.stock import router as stock_router

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Create tables on startup (migrations handle production schemas)
init_db()

app = FastAPI(title="Storefront Orders API", version="1.0.0")

origins = [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
]
if settings.FRONTEND_URL and settings.FRONTEND_URL not in origins:
    origins.append(settings.FRONTEND_URL)

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Every domain failure leaves here as {"detail": {"code", "message", "details"}}
@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s %s", request.method, request.url.path, exc.code, exc.details)
    else:
        logger.info("%s %s rejected: %s %s", request.method, request.url.path, exc.code, exc.details)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_dict()})


# Router registration
app.include_router(auth_router)
app.include_router(products_router)
app.include_router(cart_router)
app.include_router(orders_router)
app.include_router(shipping_router)
app.include_router(payment_router)

# Inventory lives under /inventory
app.include_router(stock_router, prefix="/inventory")

@app.get("/")
def read_root():
    return {"message": "Storefront Orders API is running"}
