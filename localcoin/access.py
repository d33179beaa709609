from typing import Optional

from .errors import AuthorizationError
from .models import Caller, CartOrder, Role


# A caller of None is a trusted internal invocation (admin API key, payment webhook).


def require_account_access(caller: Optional[Caller], account_id: str) -> None:
    if caller is None or caller.is_admin:
        return
    if caller.account_id != account_id:
        raise AuthorizationError("Caller does not own this account")


def require_admin(caller: Optional[Caller]) -> None:
    if caller is None or caller.is_admin:
        return
    raise AuthorizationError("Admin role required")


def require_order_party(caller: Optional[Caller], order: CartOrder) -> None:
    if caller is None or caller.is_admin:
        return
    if caller.role == Role.USER and caller.account_id == order.user_id:
        return
    if caller.role == Role.MERCHANT and caller.account_id == order.merchant_id:
        return
    raise AuthorizationError("Caller is not a party to this order")


def require_merchant(caller: Optional[Caller], merchant_id: str) -> None:
    if caller is None or caller.is_admin:
        return
    if caller.role != Role.MERCHANT or caller.account_id != merchant_id:
        raise AuthorizationError("Only the owning merchant may do this")
