class MediaRequestError(Exception):
    """Базовая ошибка сервиса заявок."""


class NotFoundError(MediaRequestError):
    """Заявка или группа заявок не найдена."""

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class StoreFailure(MediaRequestError):
    """
    Хранилище недоступно или отклонило запись.
    Детали наружу не отдаются, только в лог.
    """

    def __init__(self, operation: str):
        super().__init__(f"store operation failed: {operation}")
        self.operation = operation
