from typing import Optional

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


@event.listens_for(Engine, "connect")
def set_sqlite_pragma(dbapi_connection, connection_record):
    # https://www.sqlite.org/wal.html
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.close()


class Base(DeclarativeBase):
    pass


class Page(Base):
    __tablename__ = "pages"

    title: Mapped[str] = mapped_column(primary_key=True)
    body: Mapped[Optional[str]]

    def __repr__(self) -> str:
        return f"Page(title={self.title!r})"


class Attachment(Base):
    __tablename__ = "attachments"

    page: Mapped[str] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(primary_key=True)

    def __repr__(self) -> str:
        return f"Attachment(page={self.page!r}, name={self.name!r})"


class InterwikiRef(Base):
    __tablename__ = "interwiki_refs"

    prefix: Mapped[str] = mapped_column(primary_key=True)
    url: Mapped[str]

    def __repr__(self) -> str:
        return f"InterwikiRef(prefix={self.prefix!r}, url={self.url!r})"
