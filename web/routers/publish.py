"""Publish endpoint.

- POST /publish - Submit source for a new or existing listing
"""

from typing import Any

from fastapi import APIRouter, Depends
from fastapi import status as http_status
from pydantic import BaseModel, Field

from bundlepipe.builds.queue import OrchestratorContext
from bundlepipe.listings.service import ListingNotFoundError, NotListingOwnerError
from bundlepipe.publish.guards import DangerousPatternError, QuotaExceededError, RateLimitedError
from bundlepipe.publish.service import InvalidSubmissionError, PublishRequest, publish
from web.deps import get_caller_is_gold, get_caller_uid, get_context, http_error

router = APIRouter()


class PublishBody(BaseModel):
    """Request body for a publish."""

    id: int | str | None = Field(default=None, description="Listing id or slug to update")
    title: str = ""
    description: str | None = None
    capabilities: dict[str, Any] = Field(default_factory=dict)
    inlineCode: str = ""
    visibility: str = "public"
    files: dict[str, str] = Field(default_factory=dict)


@router.post("", status_code=http_status.HTTP_202_ACCEPTED)
def publish_endpoint(
    body: PublishBody,
    caller_uid: str = Depends(get_caller_uid),
    gold: bool = Depends(get_caller_is_gold),
    context: OrchestratorContext = Depends(get_context),
) -> dict[str, Any]:
    """Accept a submission and start its build.

    Returns:
        ``{buildId, listingId, slug}``; the build continues asynchronously.
    """
    request = PublishRequest(
        title=body.title,
        inline_code=body.inlineCode,
        description=body.description,
        capabilities=body.capabilities,
        visibility=body.visibility,
        listing_ref=body.id,
        files=body.files,
    )
    try:
        result = publish(context, caller_uid, request, gold=gold)
    except (DangerousPatternError, InvalidSubmissionError) as e:
        raise http_error(http_status.HTTP_400_BAD_REQUEST, e) from None
    except (QuotaExceededError, NotListingOwnerError) as e:
        raise http_error(http_status.HTTP_403_FORBIDDEN, e) from None
    except ListingNotFoundError as e:
        raise http_error(http_status.HTTP_404_NOT_FOUND, e) from None
    except RateLimitedError as e:
        raise http_error(http_status.HTTP_429_TOO_MANY_REQUESTS, e) from None
    return result.to_dict()
