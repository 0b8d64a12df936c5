from frame_inspector.errors import InspectorError

# Error ids carried in the `error` message of failed responses
ERROR_IDS = {
    "InvalidRequest": 1000,
    "IncompatibleThreadState": 1001,
    "DebugInfoUnavailable": 1002,
    "ThreadNotFound": 1003,
    "UnsupportedCommand": 1004,
}


class DAPRequest:
    """A DAP request built by the client side."""

    def __init__(self, seq: int, command: str, arguments: dict | None = None):
        """
        Initialize a DAPRequest object.

        :param seq: Sequence number of the request.
        :param command: The command to run.
        :param arguments: Command arguments (default: None).
        """
        self.type = "request"
        self.seq = seq
        self.command = command
        self.arguments = arguments or {}

    def to_dict(self) -> dict:
        return {
            "seq": self.seq,
            "type": self.type,
            "command": self.command,
            "arguments": self.arguments,
        }


class DAPResponse:
    """
    A unified class for generating DAP responses.

    This class represents a response in the Debug Adapter Protocol (DAP).
    """

    def __init__(
        self,
        request: dict,
        command: str,
        success: bool = True,
        body: dict | None = None,
        message: str = "",
    ):
        """
        Initialize a DAPResponse object.

        :param request: JSON client request containing a sequence number.
        :param command: The name of the command associated with this response.
        :param success: Indicates whether the command was successful (default: True).
        :param body: Response body as a dictionary (default: None).
        :param message: Error message if the response is unsuccessful (default: empty string).
        """
        self.type = "response"
        self.request_seq = request.get("seq")
        self.command = command
        self.success = success
        self.body = body or {}
        self.message = message

    def fail(self, error_name: str, message: str) -> "DAPResponse":
        """
        Mark the response as failed with a typed error.

        :param error_name: Key of ``ERROR_IDS``, e.g. ``IncompatibleThreadState``.
        :param message: Human-readable description.
        :return: The response itself.
        """
        self.success = False
        self.message = message
        self.body = {
            "error": {
                "id": ERROR_IDS.get(error_name, ERROR_IDS["InvalidRequest"]),
                "format": message,
                "variables": {"errorName": error_name},
                "showUser": False,
            },
        }
        return self

    def fail_with(self, error: InspectorError) -> "DAPResponse":
        return self.fail(error.error_code, error.message)

    def to_dict(self) -> dict:
        """
        Convert the DAPResponse object to a dictionary.

        :return: A dictionary representation of the response.
        """
        return {
            "type": self.type,
            "request_seq": self.request_seq,
            "success": self.success,
            "command": self.command,
            "body": self.body,
            "message": self.message,
        }


def error_name_of(response: dict) -> str | None:
    """Return the error name of a failed response, if it carries one."""
    error = (response.get("body") or {}).get("error") or {}
    error_id = error.get("id")
    for name, known_id in ERROR_IDS.items():
        if known_id == error_id:
            return name
    return None


class DAPEvent:
    """
    A unified class for generating DAP events.

    This class represents an event in the Debug Adapter Protocol (DAP).
    """

    def __init__(self, event: str, body: dict | None = None):
        """
        Initialize a DAPEvent object.

        :param event: Name of the event.
        :param body: Event body as a dictionary (default: None).
        """
        self.type = "event"
        self.event = event
        self.body = body or {}

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "event": self.event,
            "body": self.body,
        }
