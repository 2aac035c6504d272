"""
Project domain models.

Models:
    - Project: top-level unit of work, optionally managed by a user
    - Stage: ordered phase within a project
    - Task: unit of work inside a project, optionally attached to a stage
    - TaskDependency: directed edge "task_id must complete before dependent_task_id"
    - TaskResponse: an assignee's accept/reject answer to a task
"""

from datetime import datetime, timezone

from teamproject.models import db


# ── Constants ────────────────────────────────────────────────────────────────

PROJECT_STATUSES = {"PLANNING", "IN_PROGRESS", "ON_HOLD", "COMPLETED", "CANCELLED"}
STAGE_STATUSES = {"PENDING", "IN_PROGRESS", "COMPLETED", "BLOCKED"}
TASK_STATUSES = {"TODO", "IN_PROGRESS", "IN_REVIEW", "COMPLETED", "CANCELLED", "REFUSED"}
TASK_PRIORITIES = {"LOW", "MEDIUM", "HIGH", "URGENT"}
TASK_RESPONSES = {"accepted", "rejected"}

STAGE_TRANSITIONS = {
    "PENDING":     ["IN_PROGRESS", "BLOCKED", "COMPLETED"],
    "IN_PROGRESS": ["COMPLETED", "BLOCKED", "PENDING"],
    "BLOCKED":     ["PENDING", "IN_PROGRESS"],
    "COMPLETED":   ["IN_PROGRESS"],   # re-open
}

TASK_TRANSITIONS = {
    "TODO":        ["IN_PROGRESS", "CANCELLED", "REFUSED"],
    "IN_PROGRESS": ["IN_REVIEW", "COMPLETED", "TODO", "CANCELLED", "REFUSED"],
    "IN_REVIEW":   ["COMPLETED", "IN_PROGRESS", "CANCELLED"],
    "COMPLETED":   ["IN_PROGRESS"],   # re-open clears completed_at
    "CANCELLED":   [],
    "REFUSED":     [],
}


def validate_stage_transition(old_status, new_status):
    """Return True if Stage status transition is valid."""
    return new_status in STAGE_TRANSITIONS.get(old_status, [])


def validate_task_transition(old_status, new_status):
    """Return True if Task status transition is valid."""
    return new_status in TASK_TRANSITIONS.get(old_status, [])


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


task_assignees = db.Table(
    "task_assignees",
    db.Column("task_id", db.Integer, db.ForeignKey("tasks.id", ondelete="CASCADE"), primary_key=True),
    db.Column("user_id", db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
)


class Project(db.Model):
    __tablename__ = "projects"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(20), nullable=False, default="PLANNING",
                       comment="PLANNING | IN_PROGRESS | ON_HOLD | COMPLETED | CANCELLED")
    manager_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    manager = db.relationship("User", foreign_keys=[manager_id])
    created_by = db.relationship("User", foreign_keys=[created_by_id])
    stages = db.relationship(
        "Stage", back_populates="project", cascade="all, delete-orphan",
        order_by="Stage.order",
    )
    tasks = db.relationship("Task", back_populates="project", cascade="all, delete-orphan")

    @property
    def responsible_id(self):
        """Manager, falling back to the creator."""
        return self.manager_id or self.created_by_id

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "manager_id": self.manager_id,
            "created_by_id": self.created_by_id,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<Project {self.id}: {self.title}>"


class Stage(db.Model):
    """
    Ordered phase of a project.

    ``order`` is unique per project; the next stage of a stage is the one
    with the smallest greater ``order``.
    """

    __tablename__ = "stages"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    order = db.Column(db.Integer, nullable=False, default=0)
    duration = db.Column(db.Integer, nullable=True, comment="Planned duration in days")
    status = db.Column(db.String(20), nullable=False, default="PENDING",
                       comment="PENDING | IN_PROGRESS | COMPLETED | BLOCKED")
    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        db.UniqueConstraint("project_id", "order", name="uq_stage_project_order"),
    )

    project = db.relationship("Project", back_populates="stages")
    tasks = db.relationship("Task", back_populates="stage")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "order": self.order,
            "duration": self.duration,
            "status": self.status,
            "project_id": self.project_id,
        }

    def __repr__(self):
        return f"<Stage {self.id}: {self.name} #{self.order} [{self.status}]>"


class Task(db.Model):
    __tablename__ = "tasks"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    stage_id = db.Column(
        db.Integer, db.ForeignKey("stages.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(20), nullable=False, default="TODO",
                       comment="TODO | IN_PROGRESS | IN_REVIEW | COMPLETED | CANCELLED | REFUSED")
    priority = db.Column(db.String(10), nullable=False, default="MEDIUM")
    due_date = db.Column(db.Date, nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    refusal_reason = db.Column(db.Text, nullable=True)
    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    project = db.relationship("Project", back_populates="tasks")
    stage = db.relationship("Stage", back_populates="tasks")
    assignees = db.relationship("User", secondary=task_assignees, lazy="selectin")

    @property
    def assignee_ids(self):
        return {u.id for u in self.assignees}

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "priority": self.priority,
            "project_id": self.project_id,
            "stage_id": self.stage_id,
            "due_date": _iso(self.due_date),
            "completed_at": _iso(self.completed_at),
            "refusal_reason": self.refusal_reason,
            "assignees": [u.to_summary() for u in sorted(self.assignees, key=lambda u: u.id)],
        }

    def __repr__(self):
        return f"<Task {self.id}: {self.title} [{self.status}]>"


class TaskDependency(db.Model):
    """Edge meaning ``task_id`` must complete before ``dependent_task_id``."""

    __tablename__ = "task_dependencies"

    id = db.Column(db.Integer, primary_key=True)
    task_id = db.Column(
        db.Integer, db.ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    dependent_task_id = db.Column(
        db.Integer, db.ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        db.UniqueConstraint("task_id", "dependent_task_id", name="uq_task_dependency"),
        db.CheckConstraint("task_id != dependent_task_id", name="ck_task_dependency_no_self"),
    )

    task = db.relationship("Task", foreign_keys=[task_id])
    dependent_task = db.relationship("Task", foreign_keys=[dependent_task_id])

    def to_dict(self):
        return {
            "id": self.id,
            "task_id": self.task_id,
            "dependent_task_id": self.dependent_task_id,
            "task_title": self.task.title if self.task else None,
            "dependent_task_title": self.dependent_task.title if self.dependent_task else None,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<TaskDependency {self.task_id} -> {self.dependent_task_id}>"


class TaskResponse(db.Model):
    __tablename__ = "task_responses"

    id = db.Column(db.Integer, primary_key=True)
    task_id = db.Column(db.Integer, db.ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    response = db.Column(db.String(20), nullable=False, comment="accepted | rejected")
    reason = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        db.UniqueConstraint("task_id", "user_id", name="uq_task_response_user"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "task_id": self.task_id,
            "user_id": self.user_id,
            "response": self.response,
            "reason": self.reason,
            "created_at": _iso(self.created_at),
        }
