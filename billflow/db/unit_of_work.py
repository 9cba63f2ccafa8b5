"""Unit of work for database transactions."""

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from billflow.core.exceptions import ConcurrentUpdateError


class UnitOfWork:
    """Unit of work for database transactions.

    Everything written through the session inside the block commits together, or
    not at all:

    ```python
    async with UnitOfWork(db) as uow:
        await crud.subscription.update(db, db_obj=sub, obj_in=update, uow=uow)
        await crud.history_entry.create(db, obj_in=entry, uow=uow)
    ```

    A version mismatch on a versioned row (another writer committed first) surfaces
    as ``ConcurrentUpdateError`` after the transaction has been rolled back.
    """

    def __init__(self, session: AsyncSession):
        """Initialize the UnitOfWork with a database session.

        Args:
        ----
            session (AsyncSession): The database session.

        """
        self.session = session
        self._committed = False
        self._rolledback = False

    @property
    def committed(self) -> bool:
        """Whether the transaction has been committed."""
        return self._committed

    @property
    def finished(self) -> bool:
        """Whether the transaction has been committed or rolled back."""
        return self._committed or self._rolledback

    async def flush(self) -> None:
        """Flush pending changes without ending the transaction."""
        try:
            await self.session.flush()
        except StaleDataError as e:
            raise ConcurrentUpdateError(str(e)) from e

    async def commit(self) -> None:
        """Commit the transaction.

        If the transaction has already been committed or rolled back, this method does nothing.
        """
        if self.finished:
            return
        try:
            await self.session.commit()
        except StaleDataError as e:
            await self.rollback()
            raise ConcurrentUpdateError(str(e)) from e
        except Exception:
            await self.rollback()
            raise
        self._committed = True

    async def rollback(self) -> None:
        """Rollback the transaction.

        If the transaction has already been committed or rolled back, this method does nothing.
        """
        if not self.finished:
            await self.session.rollback()
            self._rolledback = True

    async def __aenter__(self) -> "UnitOfWork":
        """Enter the context manager."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Commit on a clean exit, roll back when the block raised."""
        if exc_type is not None:
            await self.rollback()
        else:
            await self.commit()
