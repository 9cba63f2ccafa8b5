"""Router that serves every path with and without a trailing slash."""

from typing import Any, Callable

from fastapi import APIRouter
from fastapi.types import DecoratedCallable


class TrailingSlashRouter(APIRouter):
    """Register each endpoint at ``/path`` and ``/path/`` instead of redirecting.

    Providers posting webhooks do not follow redirects, so both spellings of a path
    are served directly. Only the slash-less path appears in the OpenAPI schema.
    """

    def api_route(
        self, path: str, *, include_in_schema: bool = True, **kwargs: Any
    ) -> Callable[[DecoratedCallable], DecoratedCallable]:
        """Register the route under both spellings of ``path``.

        Args:
            path (str): The path for the endpoint
            include_in_schema (bool): Whether the slash-less path is documented
            **kwargs: Passed on to ``APIRouter.api_route``

        Returns:
            Callable[[DecoratedCallable], DecoratedCallable]: The registering decorator.
        """
        path = path.rstrip("/")

        add_path = super().api_route(path, include_in_schema=include_in_schema, **kwargs)
        add_slashed_path = super().api_route(path + "/", include_in_schema=False, **kwargs)

        def decorator(func: DecoratedCallable) -> DecoratedCallable:
            add_slashed_path(func)
            return add_path(func)

        return decorator
