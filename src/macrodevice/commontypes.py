class MacrodeviceError(Exception):
    pass


class NotInContextError(MacrodeviceError):
    def __init__(self, message="Must be inside an appropriate context manager"):
        return super().__init__(message)
