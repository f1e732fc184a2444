#!/usr/bin/env python3
"""SQLAlchemy ORM Models for the bisection history ledger.

Defines database schema using SQLAlchemy declarative models.
"""

from typing import List, Optional

from sqlalchemy import ForeignKey, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class Search(Base):
    """Bisection search model.

    One row per search identifier, across every build that took part in it.
    """

    __tablename__ = "searches"

    search_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    identifier: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    good_commit: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    bad_commit: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    mode: Mapped[str] = mapped_column(String, nullable=False, default="loop")
    start_time: Mapped[str] = mapped_column(String, nullable=False)
    end_time: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default="running")
    result_commit: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Relationships
    steps: Mapped[List["Step"]] = relationship(
        "Step", back_populates="search", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return (
            f"<Search(id={self.search_id}, identifier={self.identifier}, "
            f"status={self.status}, result={self.result_commit})>"
        )


class Step(Base):
    """Recorded verdict for one candidate commit."""

    __tablename__ = "steps"

    step_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    search_id: Mapped[int] = mapped_column(Integer, ForeignKey("searches.search_id"), nullable=False)
    step_num: Mapped[int] = mapped_column(Integer, nullable=False)
    commit_sha: Mapped[str] = mapped_column(String, nullable=False)
    verdict: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    successes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    timestamp: Mapped[str] = mapped_column(String, nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Relationships
    search: Mapped["Search"] = relationship("Search", back_populates="steps")

    def __repr__(self) -> str:
        return (
            f"<Step(id={self.step_id}, num={self.step_num}, "
            f"commit={self.commit_sha[:7]}, verdict={self.verdict})>"
        )
