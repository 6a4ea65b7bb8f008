from contextlib import asynccontextmanager
from typing import Iterator, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from sqlmodel import Session

from .cache import SimpleCache
from .config import Settings, get_settings
from .logging import configure_logging, get_logger
from .logic import (
    CouponError,
    count_redemptions,
    create_coupon,
    delete_coupon,
    get_coupon,
    list_coupons,
    redemption_counts,
    update_coupon,
    use_coupon,
    validate_coupon,
)
from .metrics import PerformanceRecorder
from .models import (
    CacheStats,
    CouponCreate,
    CouponRead,
    CouponUpdate,
    CouponUsage,
    EndpointPerformance,
    UseCouponRequest,
    UseCouponResponse,
    ValidateCouponRequest,
    ValidateCouponResponse,
    ValidatedCoupon,
)
from .storage import Database

logger = get_logger(__name__)


# ---------------------------
# Dependencies
# ---------------------------

def get_session(request: Request) -> Iterator[Session]:
    with request.app.state.database.session() as session:
        yield session


def get_cache(request: Request) -> SimpleCache:
    return request.app.state.cache


def get_recorder(request: Request) -> PerformanceRecorder:
    return request.app.state.recorder


# ---------------------------
# App factory
# ---------------------------

def create_app(settings: Optional[Settings] = None) -> FastAPI:
    if settings is None:
        settings = get_settings()
    configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.database.startup()
        app.state.recorder = PerformanceRecorder(app.state.database)
        logger.info("Storefront service started")
        try:
            yield
        finally:
            app.state.recorder.drain(timeout=5)
            app.state.recorder.shutdown()
            app.state.database.shutdown()

    app = FastAPI(title="Storefront Core Service", lifespan=lifespan)
    app.state.settings = settings
    app.state.database = Database(settings)
    app.state.cache = SimpleCache(
        max_size=settings.cache_max_size,
        default_ttl_minutes=settings.cache_default_ttl_minutes,
    )

    if settings.performance_tracking_enabled:
        excluded = set(settings.performance_excluded_paths)

        @app.middleware("http")
        async def performance_middleware(request: Request, call_next):
            if request.url.path in excluded:
                return await call_next(request)

            track_end = request.app.state.recorder.start_tracking(
                request.url.path, request.method
            )
            try:
                response = await call_next(request)
            except Exception:
                track_end(500)
                raise
            # Report the route template so /coupons/1 and /coupons/2 group together
            route = request.scope.get("route")
            track_end(response.status_code, endpoint=getattr(route, "path", None))
            return response

    register_routes(app, settings)
    return app


# ---------------------------
# Routes
# ---------------------------

def _coupon_listing(session: Session) -> List[dict]:
    counts = redemption_counts(session)
    return [
        CouponRead.from_coupon(c, counts.get(c.id, 0)).model_dump(mode="json")
        for c in list_coupons(session)
    ]


def register_routes(app: FastAPI, settings: Settings) -> None:

    @app.get("/health")
    def health_check():
        return {"status": "ok"}

    @app.get("/coupons", response_model=List[CouponRead])
    def list_coupons_route(session: Session = Depends(get_session),
                           cache: SimpleCache = Depends(get_cache)):
        return cache.with_cache(
            cache.keys.coupons(),
            lambda: _coupon_listing(session),
            settings.coupons_cache_ttl_minutes,
        )

    @app.post("/coupons", response_model=CouponRead, status_code=201)
    def create_coupon_route(payload: CouponCreate,
                            session: Session = Depends(get_session),
                            cache: SimpleCache = Depends(get_cache)):
        try:
            coupon = create_coupon(session, payload)
        except CouponError as e:
            raise HTTPException(status_code=e.status_code, detail=e.message)
        cache.delete(cache.keys.coupons())
        return CouponRead.from_coupon(coupon)

    @app.post("/coupons/validate", response_model=ValidateCouponResponse)
    def validate_coupon_route(payload: ValidateCouponRequest,
                              session: Session = Depends(get_session)):
        try:
            coupon, discount = validate_coupon(
                session, payload.code, payload.subtotal, user_id=payload.userId
            )
        except CouponError as e:
            raise HTTPException(status_code=e.status_code, detail=e.message)

        return ValidateCouponResponse(
            valid=True,
            coupon=ValidatedCoupon(
                id=coupon.id,
                code=coupon.code,
                description=coupon.description,
                discountType=coupon.discount_type,
                discountValue=coupon.discount_value,
            ),
            discount=discount,
            finalTotal=payload.subtotal - discount,
        )

    @app.post("/coupons/use", response_model=UseCouponResponse)
    def use_coupon_route(payload: UseCouponRequest,
                         session: Session = Depends(get_session),
                         cache: SimpleCache = Depends(get_cache)):
        try:
            coupon = use_coupon(session, payload.couponId, user_id=payload.userId)
        except Exception as e:
            logger.error("Failed to increment coupon usage",
                         coupon_id=payload.couponId, error=str(e))
            raise HTTPException(status_code=500, detail="Failed to update coupon")

        cache.delete(cache.keys.coupons())
        return UseCouponResponse(
            success=True,
            coupon=CouponUsage(code=coupon.code, usageCount=coupon.usage_count),
        )

    @app.get("/coupons/{coupon_id}", response_model=CouponRead)
    def get_coupon_route(coupon_id: int, session: Session = Depends(get_session)):
        try:
            coupon = get_coupon(session, coupon_id)
        except CouponError as e:
            raise HTTPException(status_code=e.status_code, detail=e.message)
        return CouponRead.from_coupon(coupon, count_redemptions(session, coupon_id))

    @app.put("/coupons/{coupon_id}", response_model=CouponRead)
    def update_coupon_route(coupon_id: int, payload: CouponUpdate,
                            session: Session = Depends(get_session),
                            cache: SimpleCache = Depends(get_cache)):
        try:
            coupon = update_coupon(session, coupon_id, payload)
        except CouponError as e:
            raise HTTPException(status_code=e.status_code, detail=e.message)
        cache.delete(cache.keys.coupons())
        return CouponRead.from_coupon(coupon, count_redemptions(session, coupon_id))

    @app.delete("/coupons/{coupon_id}", status_code=204)
    def delete_coupon_route(coupon_id: int,
                            session: Session = Depends(get_session),
                            cache: SimpleCache = Depends(get_cache)):
        try:
            delete_coupon(session, coupon_id)
        except CouponError as e:
            raise HTTPException(status_code=e.status_code, detail=e.message)
        cache.delete(cache.keys.coupons())
        return Response(status_code=204)

    @app.get("/admin/performance", response_model=List[EndpointPerformance])
    def performance_route(recorder: PerformanceRecorder = Depends(get_recorder)):
        try:
            return recorder.aggregate()
        except Exception as e:
            # An empty list renders as "no data yet" on the dashboard
            logger.error("Error fetching performance metrics", error=str(e))
            return []

    @app.get("/admin/cache", response_model=CacheStats)
    def cache_stats_route(cache: SimpleCache = Depends(get_cache)):
        return cache.stats()

    @app.delete("/admin/cache", status_code=204)
    def clear_cache_route(cache: SimpleCache = Depends(get_cache)):
        cache.clear()
        return Response(status_code=204)


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "storefront_core.main:app",
        host="127.0.0.1",
        port=8000,
        reload=False,
    )
