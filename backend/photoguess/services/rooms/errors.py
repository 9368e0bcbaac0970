"""Errors raised by room services.

Blueprints and socket handlers translate these into responses; the
``status_code`` attribute is the HTTP status the API answers with.
"""


class RoomError(Exception):
    status_code = 400
    code = 'room_error'

    def __init__(self, message=None):
        super().__init__(message or self.code)
        self.message = message or self.code


class RoomNotFound(RoomError):
    status_code = 404
    code = 'room_not_found'


class ActionRejected(RoomError):
    """The intent is not allowed in the room's current state."""
    status_code = 409
    code = 'action_rejected'


class NotHost(RoomError):
    status_code = 403
    code = 'only_host'


class NotAuthorized(RoomError):
    """The request could not prove it acts for the room user it names."""
    status_code = 403
    code = 'invalid_token'


class StoreError(RoomError):
    """A write or read against the room store failed."""
    status_code = 503
    code = 'store_unavailable'


class UploadError(RoomError):
    status_code = 502
    code = 'upload_failed'


class RestrictedOperationError(RoomError):
    """The identity provider refuses anonymous sign-in."""
    status_code = 403
    code = 'admin-restricted-operation'
