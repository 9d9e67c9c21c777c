from typing import Any, Dict


class ChatError(Exception):

    code = "chat_error"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_payload(self) -> Dict[str, Any]:
        return {"message": self.message, "code": self.code}


class AuthenticationError(ChatError):

    code = "auth_error"
    status_code = 401


class ValidationError(ChatError):

    code = "validation_error"
    status_code = 400


class NotFoundError(ChatError):

    code = "not_found"
    status_code = 404


class StoreError(ChatError):

    code = "store_error"
    status_code = 500
