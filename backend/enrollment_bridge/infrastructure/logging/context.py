from contextvars import ContextVar

_request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)
_order_id_ctx: ContextVar[str | None] = ContextVar("order_id", default=None)


def set_request_id(request_id: str | None) -> object:
    return _request_id_ctx.set(request_id)


def get_request_id() -> str | None:
    return _request_id_ctx.get()


def reset_request_id(token: object) -> None:
    _request_id_ctx.reset(token)


def set_order_id(order_id: str | None) -> object:
    return _order_id_ctx.set(order_id)


def get_order_id() -> str | None:
    return _order_id_ctx.get()


def reset_order_id(token: object) -> None:
    _order_id_ctx.reset(token)
