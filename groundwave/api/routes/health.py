"""Landing page of the sensitive ``/health`` area.

The records themselves are served elsewhere; this page only shows that the
area is unlocked and offers the lock button.
"""

from fastapi import APIRouter, Depends, Request

from groundwave.api import deps
from groundwave.api.templating import render
from groundwave.core.auth.state import SessionUser

router = APIRouter()


@router.get("/health")
async def health_index(
    request: Request,
    user: SessionUser = Depends(deps.require_sensitive_access_for_health),
):
    return render(request, "health.html", {"display_name": user.display_name})
