from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from datetime import datetime

class Base(DeclarativeBase):
    pass

class RunRecord(Base):
    __tablename__ = "runs"
    id: Mapped[str] = mapped_column(sa.String(128), primary_key=True)
    name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    status: Mapped[str] = mapped_column(sa.String(16), nullable=False, index=True)
    started_at: Mapped[float] = mapped_column(sa.Float, nullable=False)
    finished_at: Mapped[float] = mapped_column(sa.Float, nullable=False)
    context: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)
    errors: Mapped[list] = mapped_column(sa.JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)
    instances: Mapped[list["InstanceRecord"]] = relationship(
        back_populates="run", cascade="all, delete-orphan", order_by="InstanceRecord.position", lazy="selectin"
    )

    @property
    def duration(self) -> float:
        return self.finished_at - self.started_at

class InstanceRecord(Base):
    __tablename__ = "instances"
    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(sa.String(128), sa.ForeignKey("runs.id", ondelete="CASCADE"), nullable=False, index=True)
    position: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    job: Mapped[str] = mapped_column(sa.Text, nullable=False)
    label: Mapped[str] = mapped_column(sa.Text, nullable=False)
    status: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    payload_json: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)
    run: Mapped[RunRecord] = relationship(back_populates="instances")
