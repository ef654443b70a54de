"""Central model registry: import the table model so Alembic autodiscover works."""

from quote_approvals.database import Base  # noqa: F401

from quote_approvals.models.record import Record  # noqa: F401
