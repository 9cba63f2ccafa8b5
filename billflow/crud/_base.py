"""Base class for CRUD operations."""

from enum import Enum
from typing import Any, Generic, Optional, Type, TypeVar, Union
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billflow.core.exceptions import ImmutableRecordError
from billflow.db.unit_of_work import UnitOfWork
from billflow.models._base import Base

ModelType = TypeVar("ModelType", bound=Base)
CreateSchemaType = TypeVar("CreateSchemaType", bound=BaseModel)
UpdateSchemaType = TypeVar("UpdateSchemaType", bound=BaseModel)


def _column_values(
    obj_in: Union[BaseModel, dict[str, Any]], exclude_unset: bool = False
) -> dict[str, Any]:
    """Schema fields as column values; enums are stored by value."""
    if not isinstance(obj_in, dict):
        obj_in = obj_in.model_dump(exclude_unset=exclude_unset)
    return {k: v.value if isinstance(v, Enum) else v for k, v in obj_in.items()}


class CRUDBase(Generic[ModelType, CreateSchemaType, UpdateSchemaType]):
    """Base class for CRUD operations.

    Writes commit immediately unless a ``UnitOfWork`` is passed, in which case they are
    only flushed and the unit of work decides the outcome.
    """

    def __init__(self, model: Type[ModelType], immutable: bool = False):
        """Initialize the CRUD object.

        Args:
        ----
            model (Type[ModelType]): The model to be used in the CRUD operations.
            immutable (bool): Whether rows may only be created, never updated.

        """
        self.model = model
        self.immutable = immutable

    async def get(self, db: AsyncSession, id: UUID) -> Optional[ModelType]:
        """Get a single object by ID.

        Args:
        ----
            db (AsyncSession): The database session.
            id (UUID): The UUID of the object to get.

        Returns:
        -------
            Optional[ModelType]: The object with the given ID.

        """
        result = await db.execute(select(self.model).where(self.model.id == id))
        return result.scalar_one_or_none()

    async def create(
        self,
        db: AsyncSession,
        *,
        obj_in: Union[CreateSchemaType, dict[str, Any]],
        uow: Optional[UnitOfWork] = None,
    ) -> ModelType:
        """Create a new object.

        Args:
        ----
            db (AsyncSession): The database session.
            obj_in (CreateSchemaType): The object to create.
            uow (Optional[UnitOfWork]): The unit of work to use for the transaction.

        Returns:
        -------
            ModelType: The created object.

        """
        db_obj = self.model(**_column_values(obj_in))  # type: ignore

        db.add(db_obj)
        if uow:
            await uow.flush()
        else:
            await db.commit()
            await db.refresh(db_obj)
        return db_obj

    async def update(
        self,
        db: AsyncSession,
        *,
        db_obj: ModelType,
        obj_in: Union[UpdateSchemaType, dict[str, Any]],
        uow: Optional[UnitOfWork] = None,
    ) -> ModelType:
        """Merge the set fields of ``obj_in`` into ``db_obj``.

        Args:
        ----
            db (AsyncSession): The database session.
            db_obj (ModelType): The object to update.
            obj_in (Union[UpdateSchemaType, Dict[str, Any]]): The partial update.
            uow (Optional[UnitOfWork]): The unit of work to use for the transaction.

        Returns:
        -------
            ModelType: The updated object

        Raises:
        ------
            ImmutableRecordError: If rows of this model may not be updated.

        """
        if self.immutable:
            raise ImmutableRecordError(self.model.__name__)

        for key, value in _column_values(obj_in, exclude_unset=True).items():
            if hasattr(db_obj, key):
                setattr(db_obj, key, value)

        db.add(db_obj)
        if uow:
            await uow.flush()
        else:
            await db.commit()
            await db.refresh(db_obj)
        return db_obj
