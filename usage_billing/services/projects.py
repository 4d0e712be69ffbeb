import logging

from fastapi import HTTPException
from sqlalchemy.orm import Session

from usage_billing.models.account import Project
from usage_billing.schemas.feedback import ProjectCreate
from usage_billing.services.accounts import accounts
from usage_billing.services.common import apply_ordering, apply_pagination, coerce_uuid
from usage_billing.services.response import ListResponseMixin
from usage_billing.services.usage import usage

logger = logging.getLogger(__name__)


class Projects(ListResponseMixin):
    @staticmethod
    def create(db: Session, account_id: str, payload: ProjectCreate) -> Project:
        account = accounts.get(db, account_id)
        status = usage.project_limit_status(db, account.id)
        if not status["allowed"]:
            raise HTTPException(
                status_code=403,
                detail={
                    "code": "project_limit_reached",
                    "message": status["message"],
                    "details": {
                        "projects_used": status["projects_used"],
                        "projects_limit": status["projects_limit"],
                        "upgrade_options": [p.value for p in status["upgrade_options"]],
                    },
                },
            )
        project = Project(account_id=account.id, name=payload.name, url=payload.url)
        db.add(project)
        db.flush()
        usage.sync_project_count(db, account.id)
        db.commit()
        db.refresh(project)
        logger.info("Created Project: %s", project.id, extra={"account_id": str(account.id)})
        return project

    @staticmethod
    def get(db: Session, account_id: str, project_id: str) -> Project:
        project = db.get(Project, coerce_uuid(project_id))
        if not project or project.account_id != coerce_uuid(account_id):
            raise HTTPException(status_code=404, detail="Project not found")
        return project

    @staticmethod
    def list(
        db: Session,
        account_id: str,
        is_active: bool | None,
        order_by: str,
        order_dir: str,
        limit: int,
        offset: int,
    ) -> tuple[list[Project], int]:
        query = db.query(Project).filter(Project.account_id == coerce_uuid(account_id))
        if is_active is not None:
            query = query.filter(Project.is_active == is_active)
        total = query.count()
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {"created_at": Project.created_at, "name": Project.name},
        )
        return list(apply_pagination(query, limit, offset).all()), total

    @staticmethod
    def delete(db: Session, account_id: str, project_id: str) -> None:
        project = Projects.get(db, account_id, project_id)
        project.is_active = False
        db.flush()
        usage.sync_project_count(db, project.account_id)
        db.commit()
        logger.info("Deactivated Project: %s", project.id)


projects = Projects()
