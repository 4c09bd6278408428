from fastapi import status


class BookingEngineError(Exception):
    """Base class for every error the booking engine reports to callers."""
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class ValidationError(BookingEngineError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class NotFound(BookingEngineError):
    status_code = status.HTTP_404_NOT_FOUND


class InvalidDateRange(BookingEngineError):
    status_code = status.HTTP_400_BAD_REQUEST


class InvalidExtension(BookingEngineError):
    status_code = status.HTTP_400_BAD_REQUEST


class InvalidStatusTransition(BookingEngineError):
    status_code = status.HTTP_409_CONFLICT


class RoomUnavailable(BookingEngineError):
    status_code = status.HTTP_409_CONFLICT


class IncompleteBookingState(BookingEngineError):
    status_code = status.HTTP_409_CONFLICT


class LinkNotFound(NotFound):
    pass


class LinkExpired(BookingEngineError):
    status_code = status.HTTP_410_GONE


class LinkNotActive(BookingEngineError):
    status_code = status.HTTP_409_CONFLICT


class PersistenceError(BookingEngineError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class ReconciliationError(BookingEngineError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
