"""Short link redirection endpoint with smart routing."""

from fastapi import APIRouter, Depends, Request, status
from starlette.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession
from loguru import logger

from app.api.dependencies import get_redirect_service
from app.db.session import get_db
from app.services.redirect import RedirectService

# Create router with tags
router = APIRouter(tags=["redirect"])


@router.get(
    "/{slug}",
    response_class=RedirectResponse,
    status_code=status.HTTP_307_TEMPORARY_REDIRECT
)
async def redirect_to_target(
    request: Request,
    slug: str,
    db: AsyncSession = Depends(get_db),
    redirect_service: RedirectService = Depends(get_redirect_service),
):
    """Redirect to the destination chosen for this visitor.

    Unknown slugs answer 404 and expired links 410.
    """
    context = redirect_service.build_context_from_request(request)
    result = await redirect_service.resolve(db, slug, context)

    logger.bind(
        slug=slug,
        url_id=result.url_id,
        rule_id=result.rule_id,
        fallback_reason=result.fallback_reason.value if result.fallback_reason else None,
    ).debug("Redirect resolved")

    return RedirectResponse(url=result.target_url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)
