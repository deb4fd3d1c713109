"""SQLModel ORM tables for the embedded snapshot store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Text
from sqlmodel import Field, SQLModel


class RouterSnapshot(SQLModel, table=True):
    __tablename__ = "router_snapshots"  # type: ignore[bad-override]

    name: str = Field(primary_key=True)
    payload: str = Field(sa_column=Column(Text, nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
