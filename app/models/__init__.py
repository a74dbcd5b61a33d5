from app.models.chat import Chat
from app.models.prompt import Prompt
from app.models.response import Response, ResponseStatus

__all__ = ["Chat", "Prompt", "Response", "ResponseStatus"]
