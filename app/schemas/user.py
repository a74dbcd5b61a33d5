from pydantic import BaseModel


class TokenPayload(BaseModel):
    sub: str  # user id
    email: str | None = None
    exp: int
    type: str = "access"
