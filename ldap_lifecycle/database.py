"""SQLAlchemy engine, session factory, declarative base and ORM tables.

Tables: LdapUserHistory (the append-only user history ledger) and
LdapUserRole (department to OU and default groups).
"""

import logging
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional

from sqlalchemy import Column, Integer, String, create_engine, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from ldap_lifecycle.errors import PersistenceError
from ldap_lifecycle.models import HistoryEntry, RoleMapping

logger = logging.getLogger(__name__)

Base: Any = declarative_base()


class LdapUserHistory(Base):
    __tablename__ = "LdapUserHistory"

    sn = Column(Integer, primary_key=True, autoincrement=True)
    common_name = Column("CommonName", String(30), nullable=False, index=True)
    is_active = Column("IsActive", String(10), nullable=False)
    department = Column("Department", String(50), nullable=True)
    member_of = Column("MemberOf", String, nullable=True)
    street_address = Column("StreetAddress", String(50), nullable=True)
    email = Column("Email", String(50), nullable=True)
    update_time = Column("UpdateTime", String(20), nullable=False)

    def to_entry(self) -> HistoryEntry:
        return HistoryEntry(
            identity_key=self.common_name,
            is_active=self.is_active,
            department=self.department or "",
            member_of=self.member_of or "",
            street_address=self.street_address or "",
            email=self.email or "",
            update_time=self.update_time,
            id=self.sn,
        )

    @classmethod
    def from_entry(cls, entry: HistoryEntry) -> "LdapUserHistory":
        return cls(
            common_name=entry.identity_key,
            is_active=entry.is_active,
            department=entry.department,
            member_of=entry.member_of,
            street_address=entry.street_address,
            email=entry.email,
            update_time=entry.update_time,
        )


class LdapUserRole(Base):
    __tablename__ = "LdapUserRole"

    role = Column(String(100), primary_key=True)
    basic_dn = Column(String(100), nullable=False)
    # Semicolon-separated group DNs
    memberof = Column(String, nullable=True)

    def to_mapping(self) -> RoleMapping:
        group_dns = [dn.strip() for dn in (self.memberof or "").split(";") if dn.strip()]
        return RoleMapping(role=self.role, basic_dn=self.basic_dn, group_dns=group_dns)


def create_session_factory(url: str, echo: bool = False) -> sessionmaker:
    """Create an engine for ``url`` and return a session factory bound to it."""
    engine = create_engine(url, echo=echo, pool_pre_ping=True)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(session_factory: sessionmaker) -> None:
    """Create all tables that do not exist yet."""
    try:
        Base.metadata.create_all(bind=session_factory.kw["bind"])
    except SQLAlchemyError as e:
        raise PersistenceError(f"Failed to create tables: {e}") from e
    logger.info("Database tables created")


@contextmanager
def session_scope(session_factory: Callable[[], Session]) -> Iterator[Session]:
    """Provide a transactional scope around a series of operations.

    The session is committed on success and rolled-back on exception, then
    always closed. SQLAlchemy errors surface as PersistenceError.
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        raise PersistenceError(f"Database transaction failed: {e}") from e
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


class RoleRepository:
    """Read access to the department role table."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def get(self, department: str) -> Optional[RoleMapping]:
        if not department:
            return None
        with session_scope(self.session_factory) as session:
            row = session.execute(
                select(LdapUserRole).where(func.lower(LdapUserRole.role) == department.lower())
            ).scalars().first()
            return row.to_mapping() if row else None

    __call__ = get
