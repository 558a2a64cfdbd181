"""
FastAPI dependencies.

The pipeline graph is built once in the application lifespan and stored on
app.state; routes receive it through get_pipeline(). Authentication is an
upstream concern: the gateway in front of this service verifies the caller
and forwards the organization in X-Organization-ID.
"""

from __future__ import annotations

from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header, Request

from doclib.services.container import Pipeline


def get_pipeline(request: Request) -> Pipeline:
    return request.app.state.pipeline


def get_organization_id(
    x_organization_id: Annotated[UUID, Header(description="Organization the request acts for")],
) -> UUID:
    return x_organization_id


PipelineDep = Annotated[Pipeline, Depends(get_pipeline)]
OrganizationId = Annotated[UUID, Depends(get_organization_id)]
