import os


def where(file: str, path: str | None = None) -> str | None:
    """
    Like the where/which commands: the full path of file inside a PATH
    directory, or None.  PATH is searched from its last entry backwards, so
    later entries win.

    path defaults to the PATH environment variable.
    """
    search = path if path is not None else os.environ.get("PATH", "")
    for directory in reversed(search.split(os.pathsep)):
        if not directory:
            continue
        candidate = os.path.join(directory, file)
        if os.path.isfile(candidate):
            return candidate
    return None
