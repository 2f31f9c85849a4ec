"""Stock update event carried on the pub/sub channel."""
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from storebot.database import utcnow


class StockUpdateEvent(BaseModel):
    """
    Ledger change broadcast after commit.

    Serialized with camelCase keys on the wire. Ephemeral: delivered
    at most once to each live subscriber and never persisted.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    product_id: int = Field(..., alias="productId")
    previous_quantity: int = Field(..., alias="previousQuantity")
    new_quantity: int = Field(..., alias="newQuantity")
    actor_id: int | None = Field(default=None, alias="actorId")
    timestamp: datetime = Field(default_factory=utcnow)

    def to_wire(self) -> str:
        """JSON payload as published."""
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_wire(cls, payload: str | bytes) -> "StockUpdateEvent":
        """
        Decode a published payload.

        Raises:
            pydantic.ValidationError: If the payload is malformed
        """
        return cls.model_validate_json(payload)
