from fastapi import APIRouter, Body, Depends, Query, Request, Response
from fastapi.responses import JSONResponse

from shared.security.dependencies import require_idempotency_key, require_if_match, require_tenant_id

from .models import Order
from .schemas import ConfirmOrderRequest, ErrorResponse, OrderResponse, PaginatedOrdersResponse
from .service import OrderService

# Every order route is tenant scoped
router = APIRouter(dependencies=[Depends(require_tenant_id)])
public_router = APIRouter()  # health check


def get_order_service(request: Request) -> OrderService:
    return request.app.state.order_service


def _render(order: Order) -> OrderResponse:
    return OrderResponse.model_validate(order.snapshot())


def _etag(version: int) -> str:
    return f'"{version}"'


@public_router.get("/health", include_in_schema=False)
async def health_check():
    return {"service": "order", "status": "running"}


@router.post(
    "",
    status_code=201,
    response_model=OrderResponse,
    responses={409: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
async def create_order(
    tenant_id: str = Depends(require_tenant_id),
    idempotency_key: str = Depends(require_idempotency_key),
    service: OrderService = Depends(get_order_service),
):
    result = await service.create_draft_idempotent(tenant_id, idempotency_key)
    # First response and replays go through the same rendering, so replays are byte-identical
    body = OrderResponse.model_validate(result.body).model_dump(mode="json", by_alias=True)
    headers = {"ETag": _etag(body["version"])}
    if result.replayed:
        headers["Idempotent-Replayed"] = "true"
    return JSONResponse(status_code=result.status_code, content=body, headers=headers)


@router.get("", response_model=PaginatedOrdersResponse)
async def list_orders(
    request: Request,
    tenant_id: str = Depends(require_tenant_id),
    limit: int | None = Query(default=None, ge=1),
    cursor: str | None = Query(default=None),
    service: OrderService = Depends(get_order_service),
):
    settings = request.app.state.settings
    limit = min(limit or settings.page_limit_default, settings.page_limit_max)
    page = await service.list_orders(tenant_id, limit, cursor)
    body = PaginatedOrdersResponse(
        items=[_render(o) for o in page.items], next_cursor=page.next_cursor
    ).model_dump(mode="json", by_alias=True)
    if body["nextCursor"] is None:
        del body["nextCursor"]  # absent on the last page
    return JSONResponse(content=body)


@router.get("/{order_id}", response_model=OrderResponse, responses={404: {"model": ErrorResponse}})
async def get_order(
    order_id: str,
    response: Response,
    tenant_id: str = Depends(require_tenant_id),
    service: OrderService = Depends(get_order_service),
):
    order = await service.get(order_id, tenant_id)
    response.headers["ETag"] = _etag(order.version)
    return _render(order)


@router.patch(
    "/{order_id}/confirm",
    response_model=OrderResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def confirm_order(
    order_id: str,
    response: Response,
    payload: ConfirmOrderRequest = Body(...),
    tenant_id: str = Depends(require_tenant_id),
    expected_version: int = Depends(require_if_match),
    service: OrderService = Depends(get_order_service),
):
    order = await service.confirm(order_id, tenant_id, expected_version, payload.total_cents)
    response.headers["ETag"] = _etag(order.version)
    return _render(order)


@router.post(
    "/{order_id}/close",
    response_model=OrderResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
async def close_order(
    order_id: str,
    response: Response,
    tenant_id: str = Depends(require_tenant_id),
    service: OrderService = Depends(get_order_service),
):
    order = await service.close(order_id, tenant_id)
    response.headers["ETag"] = _etag(order.version)
    return _render(order)
