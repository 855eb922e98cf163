"""
Directory Models — users, departments, job positions, user↔position links.

The directory is read-only input to the workflow engine: the assignment
resolver turns job positions into concrete users, and the instance
lifecycle checks which departments a user belongs to (through the
positions they hold).

Department forms a tree through ``parent_id``. The model does not stop
cycles; ``directory_service`` refuses parents that would create one.
"""

from bpm.models import _iso, _utcnow, _uuid, db


# ── Constants ────────────────────────────────────────────────────────────────

ROLE_SUPER_ADMIN = "SUPER_ADMIN"
ROLE_ADMIN = "ADMIN"
ROLE_MANAGER = "MANAGER"
ROLE_EMPLOYEE = "EMPLOYEE"

VALID_ROLES = frozenset({ROLE_SUPER_ADMIN, ROLE_ADMIN, ROLE_MANAGER, ROLE_EMPLOYEE})
ADMIN_ROLES = frozenset({ROLE_SUPER_ADMIN, ROLE_ADMIN})

DEFAULT_DEPARTMENT_COLOR = "#6366f1"


# Many-to-many: a user may hold several positions, a position many users.
user_positions = db.Table(
    "user_positions",
    db.Column(
        "user_id", db.String(36),
        db.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True,
    ),
    db.Column(
        "position_id", db.String(36),
        db.ForeignKey("job_positions.id", ondelete="CASCADE"), primary_key=True,
    ),
    db.Index("ix_user_positions_position", "position_id"),
)


# ═══════════════════════════════════════════════════════════════
# 1. USERS
# ═══════════════════════════════════════════════════════════════
class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    email = db.Column(db.String(200), nullable=False, unique=True)
    first_name = db.Column(db.String(100), nullable=False, default="")
    last_name = db.Column(db.String(100), nullable=False, default="")
    phone = db.Column(db.String(50))
    role = db.Column(
        db.String(20), nullable=False, default=ROLE_EMPLOYEE,
        comment="SUPER_ADMIN | ADMIN | MANAGER | EMPLOYEE",
    )
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    positions = db.relationship(
        "JobPosition", secondary=user_positions, back_populates="holders",
        lazy="selectin",
    )

    @property
    def full_name(self) -> str:
        name = f"{self.first_name or ''} {self.last_name or ''}".strip()
        return name or self.email

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES

    def to_dict(self, include_positions=False):
        d = {
            "id": self.id,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "full_name": self.full_name,
            "phone": self.phone,
            "role": self.role,
            "is_active": self.is_active,
            "created_at": _iso(self.created_at),
        }
        if include_positions:
            d["position_ids"] = sorted(p.id for p in self.positions)
        return d

    def __repr__(self):
        return f"<User {self.email} {self.role}>"


# ═══════════════════════════════════════════════════════════════
# 2. DEPARTMENTS
# ═══════════════════════════════════════════════════════════════
class Department(db.Model):
    __tablename__ = "departments"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    name = db.Column(db.String(200), nullable=False)
    email = db.Column(db.String(200))
    phone_number = db.Column(db.String(50))
    color = db.Column(db.String(20), nullable=False, default=DEFAULT_DEPARTMENT_COLOR)
    parent_id = db.Column(
        db.String(36), db.ForeignKey("departments.id", ondelete="SET NULL"),
        nullable=True, index=True, comment="NULL for root departments",
    )
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    parent = db.relationship("Department", remote_side=[id], backref="children")
    positions = db.relationship(
        "JobPosition", back_populates="department", cascade="all, delete-orphan",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "phone_number": self.phone_number,
            "color": self.color,
            "parent_id": self.parent_id,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<Department {self.name}>"


# ═══════════════════════════════════════════════════════════════
# 3. JOB POSITIONS
# ═══════════════════════════════════════════════════════════════
class JobPosition(db.Model):
    """A position inside exactly one department, optionally with a manager."""

    __tablename__ = "job_positions"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    name = db.Column(db.String(200), nullable=False)
    department_id = db.Column(
        db.String(36), db.ForeignKey("departments.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    manager_id = db.Column(
        db.String(36), db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    department = db.relationship("Department", back_populates="positions")
    manager = db.relationship("User", foreign_keys=[manager_id])
    holders = db.relationship(
        "User", secondary=user_positions, back_populates="positions",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "department_id": self.department_id,
            "manager_id": self.manager_id,
            "holder_count": len(self.holders),
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<JobPosition {self.name}>"
