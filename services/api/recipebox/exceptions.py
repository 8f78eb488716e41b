"""
Service-level exceptions, translated to HTTP errors by the routers.
"""


class RecipeBoxError(Exception):
    """Base exception for recipe services"""
    pass


class NotFoundError(RecipeBoxError):
    """Raised when a row does not exist or belongs to another user"""
    def __init__(self, what: str = "Recipe"):
        self.what = what
        super().__init__(f"{what} not found.")


class ConflictError(RecipeBoxError):
    """Raised on uniqueness violations and invalid status transitions"""
    pass


class InvalidFileError(RecipeBoxError):
    """Raised when an uploaded file is not an accepted image"""
    pass


class StorageError(RecipeBoxError):
    """Raised when the object store rejects a write or delete"""
    pass


class ImportPipelineError(RecipeBoxError):
    """Raised by an import pipeline stage; code is stored on the import row"""
    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(message)


class InvalidQueryError(RecipeBoxError):
    """Raised when list parameters (cursor, limit) cannot be honoured"""
    pass


class FileTooLargeError(InvalidFileError):
    """Raised when an upload exceeds the configured size limit"""
    pass
