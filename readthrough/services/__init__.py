"""Business services that read and write through the cache."""

from .shopping_lists import ShoppingListRepository, ShoppingListService
from .users import UserRepository, UserService

__all__ = [
    "ShoppingListRepository",
    "ShoppingListService",
    "UserRepository",
    "UserService",
]
