class DownloadError(Exception):
    """A file could not be downloaded from the messaging service."""

    def __init__(self, file_path: str, message: str):
        super().__init__(f"Downloading {file_path} failed: {message}")
        self.file_path: str = file_path


class DownloadTooLargeError(DownloadError):
    """The file is larger than the relay accepts."""

    def __init__(self, file_path: str, max_bytes: int):
        super().__init__(file_path=file_path, message=f"the file is larger than {max_bytes} bytes")
        self.max_bytes: int = max_bytes
