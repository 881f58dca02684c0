class HarnessError(Exception):
    def __init__(self, *args: object) -> None:
        super().__init__(*args)


class TaskAlreadyRegisteredError(HarnessError):
    def __init__(self, *args: object) -> None:
        super().__init__(*args)


class DoublePublishError(HarnessError):
    def __init__(self, *args: object) -> None:
        super().__init__(*args)
