class InspectionError(Exception):
    def __init__(self, *args: object) -> None:
        super().__init__(*args)


class InspectionConnectionError(InspectionError, ConnectionError):
    def __init__(self, *args: object) -> None:
        super().__init__(*args)


class ResultTimeoutError(InspectionError, TimeoutError):
    def __init__(self, *args: object) -> None:
        super().__init__(*args)


class ProcessExitError(InspectionError):
    def __init__(self, returncode: int | None, *args: object) -> None:
        if not args:
            if returncode is None:
                args = ("process closed the inspection channel before reporting",)
            else:
                args = (f"process exited with code {returncode} before reporting",)
        super().__init__(*args)
        self.returncode = returncode


class ProtocolError(InspectionError):
    def __init__(self, *args: object) -> None:
        super().__init__(*args)


class ConnectTimeoutError(InspectionConnectionError):
    def __init__(self, *args: object) -> None:
        super().__init__(*args)
