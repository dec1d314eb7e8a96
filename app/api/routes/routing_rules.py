"""Routing rule management endpoints.

Service errors are translated to HTTP responses by the application's
ServiceError handler.
"""

from fastapi import APIRouter, Depends, Path, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api import schemas
from app.api.dependencies import get_request_meta, get_requester, get_routing_service
from app.db.session import get_db
from app.models.routing import (
    CreateFromTemplate,
    RoutingRuleCreate,
    RoutingRuleList,
    RoutingRuleRead,
    RoutingRuleUpdate,
    SmartRoutingSettingsRead,
    SmartRoutingSettingsUpdate,
)
from app.models.user import RequestMeta
from app.services.routing import RoutingService

router = APIRouter(tags=["routing"])

ERROR_RESPONSES = {
    400: {"model": schemas.ErrorResponse, "description": "Invalid rule or rule limit reached"},
    404: {"model": schemas.ErrorResponse, "description": "URL or routing rule not found"},
}


@router.get(
    "/urls/{url_id}/routing-rules",
    response_model=RoutingRuleList,
    responses=ERROR_RESPONSES,
)
async def list_routing_rules(
    url_id: int = Path(..., ge=1),
    db: AsyncSession = Depends(get_db),
    requester: schemas.Requester = Depends(get_requester),
    routing_service: RoutingService = Depends(get_routing_service),
):
    """List the link's rules in evaluation order, with match statistics."""
    return await routing_service.find_all(db, url_id, requester.user_id, requester.role)


@router.post(
    "/urls/{url_id}/routing-rules",
    response_model=RoutingRuleRead,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
)
async def create_routing_rule(
    rule_data: RoutingRuleCreate,
    url_id: int = Path(..., ge=1),
    db: AsyncSession = Depends(get_db),
    requester: schemas.Requester = Depends(get_requester),
    meta: RequestMeta = Depends(get_request_meta),
    routing_service: RoutingService = Depends(get_routing_service),
):
    return await routing_service.create(db, url_id, requester.user_id, requester.role, rule_data, meta)


@router.post(
    "/urls/{url_id}/routing-rules/from-template",
    response_model=RoutingRuleRead,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
)
async def create_routing_rule_from_template(
    template_data: CreateFromTemplate,
    url_id: int = Path(..., ge=1),
    db: AsyncSession = Depends(get_db),
    requester: schemas.Requester = Depends(get_requester),
    meta: RequestMeta = Depends(get_request_meta),
    routing_service: RoutingService = Depends(get_routing_service),
):
    return await routing_service.create_from_template(
        db, url_id, requester.user_id, requester.role, template_data, meta
    )


@router.get(
    "/urls/{url_id}/routing-rules/{rule_id}",
    response_model=RoutingRuleRead,
    responses=ERROR_RESPONSES,
)
async def get_routing_rule(
    url_id: int = Path(..., ge=1),
    rule_id: int = Path(..., ge=1),
    db: AsyncSession = Depends(get_db),
    requester: schemas.Requester = Depends(get_requester),
    routing_service: RoutingService = Depends(get_routing_service),
):
    return await routing_service.find_one(db, url_id, rule_id, requester.user_id, requester.role)


@router.api_route(
    "/urls/{url_id}/routing-rules/{rule_id}",
    methods=["PUT", "PATCH"],
    response_model=RoutingRuleRead,
    responses=ERROR_RESPONSES,
)
async def update_routing_rule(
    rule_data: RoutingRuleUpdate,
    url_id: int = Path(..., ge=1),
    rule_id: int = Path(..., ge=1),
    db: AsyncSession = Depends(get_db),
    requester: schemas.Requester = Depends(get_requester),
    meta: RequestMeta = Depends(get_request_meta),
    routing_service: RoutingService = Depends(get_routing_service),
):
    return await routing_service.update(
        db, url_id, rule_id, requester.user_id, requester.role, rule_data, meta
    )


@router.delete(
    "/urls/{url_id}/routing-rules/{rule_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses=ERROR_RESPONSES,
)
async def delete_routing_rule(
    url_id: int = Path(..., ge=1),
    rule_id: int = Path(..., ge=1),
    db: AsyncSession = Depends(get_db),
    requester: schemas.Requester = Depends(get_requester),
    meta: RequestMeta = Depends(get_request_meta),
    routing_service: RoutingService = Depends(get_routing_service),
):
    await routing_service.delete(db, url_id, rule_id, requester.user_id, requester.role, meta)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.patch(
    "/urls/{url_id}/smart-routing",
    response_model=SmartRoutingSettingsRead,
    responses=ERROR_RESPONSES,
)
async def update_smart_routing_settings(
    settings_data: SmartRoutingSettingsUpdate,
    url_id: int = Path(..., ge=1),
    db: AsyncSession = Depends(get_db),
    requester: schemas.Requester = Depends(get_requester),
    meta: RequestMeta = Depends(get_request_meta),
    routing_service: RoutingService = Depends(get_routing_service),
):
    """Toggle smart routing and set the fallback destination of a link."""
    return await routing_service.update_settings(
        db, url_id, requester.user_id, requester.role, settings_data, meta
    )


@router.get(
    "/routing-templates",
    response_model=schemas.RoutingTemplateListResponse,
)
async def list_routing_templates(
    routing_service: RoutingService = Depends(get_routing_service),
):
    return schemas.RoutingTemplateListResponse(templates=routing_service.get_templates())
