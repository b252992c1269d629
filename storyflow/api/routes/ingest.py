from fastapi import APIRouter, Depends

from storyflow.api.errors import http_error_for
from storyflow.core.security import get_machine_principal, require_scopes_or_403
from storyflow.schemas.ingest import IngestRequest, IngestResult
from storyflow.services.errors import RepositoryError
from storyflow.services.pipeline import get_pipeline

router = APIRouter()


@router.post("", response_model=IngestResult)
async def ingest_article(
    payload: IngestRequest,
    principal=Depends(get_machine_principal),
    pipeline=Depends(get_pipeline),
) -> IngestResult:
    require_scopes_or_403(principal, {"ingest:write"})

    try:
        result = await pipeline.ingest(
            topic_id=payload.topic_id,
            url=payload.url,
            title=payload.title,
            body=payload.body,
            author=payload.author,
            published_at=payload.published_at,
            import_metadata=payload.import_metadata,
            actor_type="machine",
            actor_id=principal.subject,
        )
    except RepositoryError as exc:
        raise http_error_for(exc) from exc

    return IngestResult(**result)
