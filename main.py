import collections.abc
import os
import sys
import threading

import pystdiostream.stdio
from pystdiostream.stdio import operators
from pystdiostream.utils import setup_logging

type Example = collections.abc.Callable[[list[str]], pystdiostream.stdio.Disposable]


def print_line(line: str) -> None:
    print(line, flush=True)


def download(args: list[str]) -> pystdiostream.stdio.Disposable:
    """wget a url, giving up when it stalls for 10 seconds"""
    url = args[0] if args else "https://releases.ubuntu.com/24.04/SHA256SUMS"
    return (
        pystdiostream.stdio.create("wget", ["-q", "--show-progress", "-O", "-", url])
        .pipe(operators.timeout(10.0))
        .subscribe(
            lambda text: print("\r" + text, end="", flush=True),
            lambda error: print(f"\ndownload timed out or failed: {error}"),
            lambda: print("\ndownload complete"),
        )
    )


def keep_alive(args: list[str]) -> pystdiostream.stdio.Disposable:
    """run a server executable found on PATH and restart it whenever it fails"""
    name = args[0] if args else "couchdb"
    executable = pystdiostream.stdio.where(name)
    if executable is None:
        sys.stderr.write(f"{name} not found on PATH\n")
        sys.exit(1)
    return (
        pystdiostream.stdio.create(executable)
        .pipe(operators.retry())
        .subscribe(print_line)
    )


def interactive(args: list[str]) -> pystdiostream.stdio.Disposable:
    """forward our stdin lines to a child (default: cat) and print its output"""
    argv = args or ["cat"]
    lines = pystdiostream.stdio.Subject[str]()
    config = pystdiostream.stdio.ProcessLaunchConfig(
        executable=argv[0],
        arguments=argv[1:],
        input=lines,
        write_newlines=True,
        exit_method=pystdiostream.stdio.ExitMethod.INPUT_CLOSE,
    )
    subscription = pystdiostream.stdio.create_from_config(config).subscribe(
        print_line, lambda error: print(f"child failed: {error}")
    )

    def forward() -> None:
        for line in sys.stdin:
            lines.on_next(line.rstrip("\n"))
        lines.on_completed()

    threading.Thread(target=forward, daemon=True).start()
    return subscription


EXAMPLES: dict[str, Example] = {
    "download": download,
    "keep-alive": keep_alive,
    "interactive": interactive,
}


def get_example() -> Example:
    if len(sys.argv) < 2:
        sys.stderr.write(
            f"too few arguments.  Example name required: {sorted(EXAMPLES)}\n"
        )
        sys.exit(1)
    name = sys.argv[1]
    example = EXAMPLES.get(name)
    if example is None:
        sys.stderr.write(f"unknown example: [{name}]\n")
        sys.exit(1)
    return example


def main() -> None:
    setup_logging(os.environ.get("PYSTDIOSTREAM_LOG_LEVEL", "WARNING"))
    example = get_example()
    with example(sys.argv[2:]):
        if example is not interactive:
            input("press enter to stop\n")
        else:
            threading.Event().wait()
    print("Done.")


if __name__ == "__main__":
    main()
