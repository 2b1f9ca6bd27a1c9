"""
SQLAlchemy model for archived presenter scores.
Keeps the results of soft-ended sessions queryable after Redis drops them.
"""
from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()


class ArchivedScore(Base):
    """
    One recorded presenter round from an ended session.

    `position` is the index in the session's score history, so
    (session_id, position) reproduces the original ordering.
    """
    __tablename__ = "archived_scores"

    id = Column(Integer, primary_key=True)
    session_id = Column(String(16), index=True, nullable=False)
    admin_uid = Column(String(128), index=True, nullable=False)
    position = Column(Integer, nullable=False)
    presenter_name = Column(String(255), nullable=False)
    presenter_uid = Column(String(128), index=True)
    likes = Column(Integer, nullable=False, default=0)
    dislikes = Column(Integer, nullable=False, default=0)
    net_score = Column(Integer, nullable=False, default=0)
    session_created_at = Column(DateTime(timezone=True))
    archived_at = Column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self) -> str:
        return f"<ArchivedScore(session={self.session_id}, name={self.presenter_name}, net={self.net_score})>"

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "position": self.position,
            "name": self.presenter_name,
            "uid": self.presenter_uid,
            "likes": self.likes,
            "dislikes": self.dislikes,
            "net_score": self.net_score,
            "session_created_at": self.session_created_at.isoformat() if self.session_created_at else None,
            "archived_at": self.archived_at.isoformat() if self.archived_at else None,
        }
