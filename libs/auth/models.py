from typing import Optional

from pydantic import BaseModel, EmailStr, Field


class AuthUser(BaseModel):
    """
    Represents an authenticated subject from the identity provider.

    ``user_id`` is opaque; it maps to ``User.external_id`` in the ledger.
    """

    user_id: str = Field(..., alias="sub")
    email: Optional[EmailStr] = None
    role: str = "authenticated"

    model_config = {"populate_by_name": True}
