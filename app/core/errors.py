class AppError(Exception):
    """Domain error raised by services; app.main maps it to a JSON {error, details} response."""
    status_code = 400

    def __init__(self, message: str, details=None, code: str | None = None):
        super().__init__(message)
        self.message = message
        self.details = details
        self.code = code


class BadRequestError(AppError):
    status_code = 400


class InvalidStateError(BadRequestError):
    pass


class ForbiddenError(AppError):
    status_code = 403


class NotFoundError(AppError):
    status_code = 404
