import typing as t


class RoverError(Exception):
    """Super-type of all errors raised by roverfs code"""

    def __init__(self, msg: str, code_space: str = "GEN", code_number: int = None, is_recoverable: bool = False, wrapped: t.Optional[Exception] = None):
        self.internal_code = "" if code_number is None else f"{code_space}-{code_number}"
        super().__init__(f"{msg} [{self.internal_code}]")
        self.is_recoverable = is_recoverable
        self.wrapped = wrapped


class RoverHalt(RoverError):

    def __init__(self):
        super().__init__("Application halt requested", "HALT", 1)
