# Central database only; each tenant keeps its edit_locks in its own database.
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String
from ..shared.db import Base


class Tenant(Base):
    __tablename__ = "tenants"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255))
    # host name observers subscribe with, e.g. "acme.example.com"
    primary_domain: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
