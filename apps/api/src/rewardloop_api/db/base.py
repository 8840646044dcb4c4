from sqlalchemy.orm import DeclarativeBase, declared_attr


class Base(DeclarativeBase):
    """Base class for SQLAlchemy models with automatic table naming."""

    @declared_attr.directive
    def __tablename__(cls) -> str:  # noqa: N805
        return cls.__name__.lower()


def import_models() -> None:
    """Register every model on ``Base.metadata`` (Alembic, test bootstrap)."""

    import rewardloop_api.models  # noqa: F401,WPS433
