REPLY_WELCOME = (
    "Hi! I'm Repo Relay. Ask me anything about code, or send me a ZIP archive and tell me to upload it "
    '(for example "upload it to repo my-project") and I will push it to GitHub for real.'
)
REPLY_HELP = (
    "Send a message to chat with the assistant.\n"
    "Send a .zip file, then say \"upload it to repo <name>\" to push its files to GitHub.\n"
    "/new starts a fresh conversation and forgets the uploaded archive."
)
REPLY_NEW_SESSION = "Done, we're starting a fresh conversation. What do you need?"
REPLY_UNKNOWN_COMMAND = "I don't know that command. Send /new to start over."

REPLY_COMPLETION_BUSY = "Every assistant key is busy right now. Give it a minute and try again."
REPLY_COMPLETION_FAILED = "Sorry, the assistant is not responding right now. Try again."

REPLY_NOT_A_ZIP = "I can only work with ZIP archives. Send the project as a .zip file."
REPLY_ARCHIVE_CORRUPT = "That file looks broken. Try sending it again."
REPLY_ARCHIVE_TOO_LARGE = "That archive is too large for me to handle."
REPLY_ARCHIVE_UNREADABLE = "I couldn't unpack that archive on my side. Try again in a moment."
REPLY_DOWNLOAD_FAILED = "I couldn't download that file. Try sending it again."
REPLY_ARCHIVE_RECEIVED = "Got the archive and extracted {file_count} files. Which repository should I upload it to?"

REPLY_NO_ARCHIVE = "Where's the file? Send me the ZIP archive first and I'll upload it for you."
REPLY_HOSTING_DISABLED = "Uploads are disabled because no GitHub token is configured."
REPLY_INVALID_REPO_NAME = "Repository names can only contain letters, digits, '.', '-' and '_'."
REPLY_SYNC_FAILED = "Something went wrong while uploading. Check the token and the repository name."
REPLY_SYNC_SUCCEEDED = "Done! The files are uploaded here:\n{html_url}"
REPLY_SYNC_PARTIAL = "Uploaded {uploaded} of {total} files here:\n{html_url}\n\nThese files failed:\n{failed}"
