from dataclasses import dataclass

ADMIN = "admin"
SELLER = "seller"


@dataclass(frozen=True)
class Actor:
    """Already-authenticated caller of the inbox API."""

    role: str
    seller_id: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN

    @property
    def is_seller(self) -> bool:
        return self.role == SELLER and bool(self.seller_id)

    @property
    def actor_id(self) -> str:
        return ADMIN if self.is_admin else (self.seller_id or "")
