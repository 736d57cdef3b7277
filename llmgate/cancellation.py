from typing import Optional

from .errors import RequestCancelledError


class CancellationToken:
    """
    Cooperative cancellation signal carried by a request.

    Adapters check the token before issuing a call and at every stream chunk
    boundary. Once cancelled a token stays cancelled.
    """

    def __init__(self):
        self._cancelled = False
        self._reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: Optional[str] = None) -> None:
        if not self._cancelled:
            self._cancelled = True
            self._reason = reason

    def raise_if_cancelled(self) -> None:
        """
        Raise ``RequestCancelledError`` if the token has fired.

        Raises:
            RequestCancelledError: If ``cancel()`` was called.
        """
        if self._cancelled:
            detail = "Request cancelled"
            if self._reason:
                detail = f"{detail}: {self._reason}"
            raise RequestCancelledError(detail)

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self._cancelled})"
