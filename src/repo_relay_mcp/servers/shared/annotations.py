from typing import Annotated

from pydantic import Field

USER_ID_DESCRIPTION = "The identity of the user on the messaging service."
USER_ID = Annotated[str, Field(description=USER_ID_DESCRIPTION)]

TEXT_DESCRIPTION = "The text of the message the user sent."
TEXT = Annotated[str, Field(description=TEXT_DESCRIPTION)]

REPO_NAME_DESCRIPTION = "The name of the repository to push the files to. It is created when it does not exist yet."
REPO_NAME = Annotated[str, Field(description=REPO_NAME_DESCRIPTION)]

ARCHIVE_BASE64 = Annotated[str, Field(description="The ZIP archive the user sent, base64 encoded.")]
FILE_PATH = Annotated[str, Field(description="The path the messaging service assigned to the uploaded file.")]
FILENAME = Annotated[str, Field(description="The name of the file as the user sent it.")]
