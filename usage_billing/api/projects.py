from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from usage_billing.api.deps import get_db, require_account
from usage_billing.schemas.common import ListResponse
from usage_billing.schemas.feedback import FeedbackRead, ProjectCreate, ProjectRead
from usage_billing.services.projects import projects
from usage_billing.services.visibility import visibility

router = APIRouter(prefix="/projects", tags=["projects"])


@router.post("", response_model=ProjectRead, status_code=status.HTTP_201_CREATED)
def create_project(
    payload: ProjectCreate,
    account_id: str = Depends(require_account),
    db: Session = Depends(get_db),
):
    return projects.create(db, account_id, payload)


@router.get("", response_model=ListResponse[ProjectRead])
def list_projects(
    is_active: bool | None = True,
    order_by: str = Query(default="created_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    account_id: str = Depends(require_account),
    db: Session = Depends(get_db),
):
    return projects.list_response(
        db, account_id, is_active, order_by, order_dir, limit, offset
    )


@router.delete("/{project_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_project(
    project_id: str,
    account_id: str = Depends(require_account),
    db: Session = Depends(get_db),
):
    projects.delete(db, account_id, project_id)


@router.get("/{project_id}/feedback", response_model=ListResponse[FeedbackRead])
def list_project_feedback(
    project_id: str,
    skip: int = Query(default=0, ge=0),
    take: int = Query(default=50, ge=1, le=200),
    include_hidden: bool = False,
    account_id: str = Depends(require_account),
    db: Session = Depends(get_db),
):
    items, total = visibility.get_visible_feedback(
        db, account_id, project_id, skip=skip, take=take, include_hidden=include_hidden
    )
    return {
        "items": items,
        "count": len(items),
        "limit": take,
        "offset": skip,
        "total": total,
    }
