"""
Project API Routes
==================

Routes:
  GET    /api/v1/projects                               -- Caller's projects (paginated)
  GET    /api/v1/projects/{project_id}                  -- Project detail with milestones
  PUT    /api/v1/projects/{project_id}/status           -- Start work / submit for approval
  POST   /api/v1/projects/{project_id}/cancel           -- Cancel a project
  POST   /api/v1/projects/{project_id}/milestones       -- Add a milestone
  PUT    /api/v1/projects/milestones/{milestone_id}     -- Edit milestone terms
  POST   /api/v1/projects/milestones/{milestone_id}/start
  POST   /api/v1/projects/milestones/{milestone_id}/complete
  POST   /api/v1/projects/milestones/{milestone_id}/approve
  POST   /api/v1/projects/milestones/{milestone_id}/reject
"""

from __future__ import annotations

import uuid
from typing import Optional

from fastapi import APIRouter, Query, status

from bidflow.api.deps import CurrentIdentity, Projects
from bidflow.api.responses import Envelope, PageOut, ok, page_out, unwrap_or_raise
from bidflow.api.schemas.project import (
    MilestoneCompleteRequest,
    MilestoneCreateRequest,
    MilestoneOut,
    MilestoneRejectRequest,
    MilestoneUpdateRequest,
    ProjectCancelRequest,
    ProjectDetailOut,
    ProjectOut,
    ProjectStatusUpdateRequest,
)
from bidflow.core.config import settings
from bidflow.models.project import ProjectStatus

router = APIRouter(prefix="/projects", tags=["Projects"])


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------

@router.get(
    "",
    response_model=Envelope[PageOut[ProjectOut]],
    summary="List my projects",
    description="Projects where the caller is the customer or the provider.",
)
async def list_projects(
    identity: CurrentIdentity,
    projects: Projects,
    status_filter: Optional[ProjectStatus] = Query(default=None, alias="status"),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=settings.default_page_size, ge=1, le=settings.max_page_size),
):
    result = await projects.list_projects(identity, status=status_filter, page=page, page_size=page_size)
    return ok(page_out(unwrap_or_raise(result), ProjectOut))


@router.get(
    "/{project_id}",
    response_model=Envelope[ProjectDetailOut],
    summary="Get project detail",
)
async def get_project(project_id: uuid.UUID, identity: CurrentIdentity, projects: Projects):
    project, milestones = unwrap_or_raise(await projects.get_project(identity, project_id))
    detail = ProjectDetailOut(
        **ProjectOut.model_validate(project).model_dump(),
        milestones=[MilestoneOut.model_validate(m) for m in milestones],
    )
    return ok(detail)


@router.put(
    "/{project_id}/status",
    response_model=Envelope[ProjectOut],
    summary="Update project status",
    description=(
        "Moves the project to IN_PROGRESS (escrow must be funded) or to "
        "PENDING_APPROVAL (provider). Completion happens through the final "
        "payment release; cancellation through the cancel endpoint."
    ),
)
async def update_project_status(
    project_id: uuid.UUID,
    body: ProjectStatusUpdateRequest,
    identity: CurrentIdentity,
    projects: Projects,
):
    project = unwrap_or_raise(await projects.update_project_status(identity, project_id, body.status))
    return ok(ProjectOut.model_validate(project), "Project status updated")


@router.post(
    "/{project_id}/cancel",
    response_model=Envelope[ProjectOut],
    summary="Cancel a project",
    description="Customer or admin. Escrowed funds are not refunded automatically.",
)
async def cancel_project(
    project_id: uuid.UUID,
    identity: CurrentIdentity,
    projects: Projects,
    body: Optional[ProjectCancelRequest] = None,
):
    reason = body.reason if body else None
    project = unwrap_or_raise(await projects.cancel_project(identity, project_id, reason))
    return ok(ProjectOut.model_validate(project), "Project cancelled")


# ---------------------------------------------------------------------------
# Milestones
# ---------------------------------------------------------------------------

@router.post(
    "/{project_id}/milestones",
    response_model=Envelope[MilestoneOut],
    status_code=status.HTTP_201_CREATED,
    summary="Add a milestone",
    description="Milestone amounts together may not exceed the agreed project amount.",
)
async def create_milestone(
    project_id: uuid.UUID,
    body: MilestoneCreateRequest,
    identity: CurrentIdentity,
    projects: Projects,
):
    milestone = unwrap_or_raise(await projects.create_milestone(identity, project_id, body.to_draft()))
    return ok(MilestoneOut.model_validate(milestone), "Milestone created")


@router.put(
    "/milestones/{milestone_id}",
    response_model=Envelope[MilestoneOut],
    summary="Edit milestone terms",
)
async def update_milestone(
    milestone_id: uuid.UUID,
    body: MilestoneUpdateRequest,
    identity: CurrentIdentity,
    projects: Projects,
):
    milestone = unwrap_or_raise(await projects.update_milestone(identity, milestone_id, body.to_patch()))
    return ok(MilestoneOut.model_validate(milestone), "Milestone updated")


@router.post(
    "/milestones/{milestone_id}/start",
    response_model=Envelope[MilestoneOut],
    summary="Start a milestone (provider)",
)
async def start_milestone(milestone_id: uuid.UUID, identity: CurrentIdentity, projects: Projects):
    milestone = unwrap_or_raise(await projects.start_milestone(identity, milestone_id))
    return ok(MilestoneOut.model_validate(milestone), "Milestone started")


@router.post(
    "/milestones/{milestone_id}/complete",
    response_model=Envelope[MilestoneOut],
    summary="Submit a milestone for approval (provider)",
)
async def complete_milestone(
    milestone_id: uuid.UUID,
    identity: CurrentIdentity,
    projects: Projects,
    body: Optional[MilestoneCompleteRequest] = None,
):
    body = body or MilestoneCompleteRequest()
    milestone = unwrap_or_raise(await projects.complete_milestone(
        identity,
        milestone_id,
        completion_photos=body.completion_photos,
        notes=body.notes,
    ))
    return ok(MilestoneOut.model_validate(milestone), "Milestone submitted for approval")


@router.post(
    "/milestones/{milestone_id}/approve",
    response_model=Envelope[MilestoneOut],
    summary="Approve a milestone (customer)",
)
async def approve_milestone(milestone_id: uuid.UUID, identity: CurrentIdentity, projects: Projects):
    milestone = unwrap_or_raise(await projects.approve_milestone(identity, milestone_id))
    return ok(MilestoneOut.model_validate(milestone), "Milestone approved")


@router.post(
    "/milestones/{milestone_id}/reject",
    response_model=Envelope[MilestoneOut],
    summary="Reject a milestone (customer)",
)
async def reject_milestone(
    milestone_id: uuid.UUID,
    body: MilestoneRejectRequest,
    identity: CurrentIdentity,
    projects: Projects,
):
    milestone = unwrap_or_raise(await projects.reject_milestone(identity, milestone_id, body.reason))
    return ok(MilestoneOut.model_validate(milestone), "Milestone rejected")
