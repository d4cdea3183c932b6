from datetime import datetime, timezone

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from shorty import models


class DuplicateCode(Exception):
    """The primary key rejected an insert."""

    def __init__(self, code: str):
        super().__init__(code)
        self.code = code


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_link(db: Session, code: str, target: str) -> models.Link:
    link = models.Link(code=code, target=target, clicks=0, last_clicked=None, created_at=utcnow())
    db.add(link)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise DuplicateCode(code)
    db.refresh(link)
    return link


def get_link(db: Session, code: str) -> models.Link | None:
    return db.query(models.Link).filter_by(code=code).first()


def code_exists(db: Session, code: str) -> bool:
    return db.query(models.Link.code).filter_by(code=code).first() is not None


def get_links(db: Session) -> list[models.Link]:
    return db.query(models.Link).order_by(models.Link.created_at.desc()).all()


def delete_link(db: Session, code: str) -> bool:
    deleted = db.query(models.Link).filter_by(code=code).delete()
    db.commit()
    return deleted > 0


def record_click(db: Session, code: str) -> None:
    # single statement so concurrent redirects never lose an increment
    db.execute(
        update(models.Link)
        .where(models.Link.code == code)
        .values(clicks=models.Link.clicks + 1, last_clicked=utcnow())
    )
    db.commit()
