"""CLI utility functions for binbuild.

This module provides common utilities used across CLI commands including:
- Platform argument parsing
- Error handling and formatting
- Build summaries
"""

import sys
from typing import TYPE_CHECKING, Iterable, List

from binbuild.config.platform import Platform, supported_platforms
from binbuild.sandbox.runner import SandboxSetupError

if TYPE_CHECKING:
    from binbuild.build.orchestrator import MultiBuildResult


class PlatformParser:
    """Parses platform arguments from the command line."""

    @staticmethod
    def parse_platforms(values: Iterable[str]) -> List[Platform]:
        """Parse triplets given as separate or comma-separated arguments.

        The special names 'all' (every supported platform) and 'host' are
        accepted as well.

        Args:
            values: Raw argument values (e.g., ["x86_64-linux-gnu,i686-w64-mingw32"])

        Returns:
            Platforms in argument order, without duplicates

        Raises:
            InvalidTripletError: If a value is not a valid triplet
            UnsupportedPlatformError: If 'host' is given on an unsupported host
        """
        platforms: List[Platform] = []
        for value in values:
            for item in value.split(","):
                item = item.strip()
                if not item:
                    continue
                if item == "all":
                    parsed = list(supported_platforms())
                elif item == "host":
                    parsed = [Platform.host()]
                else:
                    parsed = [Platform.parse(item)]
                platforms.extend(p for p in parsed if p not in platforms)
        return platforms


class ErrorFormatter:
    """Formats and displays error messages with ANSI color codes."""

    # ANSI color codes
    RED = "\033[1;31m"
    GREEN = "\033[1;32m"
    YELLOW = "\033[1;33m"
    RESET = "\033[0m"

    @staticmethod
    def print_error(title: str, message: str, verbose: bool = False) -> None:
        """Print formatted error message.

        Args:
            title: Error title (e.g., "File not found", "Build failed")
            message: Error message details
            verbose: Whether to print verbose output (e.g., traceback)
        """
        print()
        print(f"{ErrorFormatter.RED}✗ {title}{ErrorFormatter.RESET}")
        print()
        print(message)
        print()

    @staticmethod
    def print_success(message: str) -> None:
        print()
        print(f"{ErrorFormatter.GREEN}✓ {message}{ErrorFormatter.RESET}")

    @staticmethod
    def print_warning(message: str) -> None:
        print()
        print(f"{ErrorFormatter.YELLOW}✗ {message}{ErrorFormatter.RESET}")

    @staticmethod
    def handle_file_not_found(error: FileNotFoundError) -> None:
        """Handle FileNotFoundError with standard formatting.

        Args:
            error: The FileNotFoundError to handle
        """
        ErrorFormatter.print_error("Error: File not found", str(error))
        print("Check the path to the build descriptor or prefix.")
        sys.exit(1)

    @staticmethod
    def handle_permission_error(error: PermissionError) -> None:
        ErrorFormatter.print_error("Error: Permission denied", str(error))
        sys.exit(1)

    @staticmethod
    def handle_setup_error(error: SandboxSetupError, exit_code: int = 5) -> None:
        """Handle a sandbox setup failure, showing its remediation hint.

        Args:
            error: The SandboxSetupError to handle
            exit_code: Process exit code
        """
        ErrorFormatter.print_error("Error: Sandbox setup failed", str(error))
        sys.exit(exit_code)

    @staticmethod
    def handle_keyboard_interrupt() -> None:
        """Handle KeyboardInterrupt with standard formatting."""
        ErrorFormatter.print_warning("Build interrupted")
        sys.exit(130)  # Standard exit code for SIGINT

    @staticmethod
    def handle_unexpected_error(error: Exception, verbose: bool = False) -> None:
        """Handle unexpected errors with standard formatting.

        Args:
            error: The exception to handle
            verbose: Whether to print traceback
        """
        message = f"{type(error).__name__}: {error}"
        ErrorFormatter.print_error("Unexpected error", message)

        if verbose:
            import traceback

            print("Traceback:")
            print(traceback.format_exc())

        sys.exit(1)


class BannerFormatter:
    """Formats and displays banner messages with borders."""

    DEFAULT_WIDTH = 80
    DEFAULT_BORDER_CHAR = "="

    @staticmethod
    def format_banner(
        message: str,
        width: int = DEFAULT_WIDTH,
        border_char: str = DEFAULT_BORDER_CHAR,
        center: bool = True,
    ) -> str:
        """Format a banner message with top and bottom borders.

        Args:
            message: The message to display (can be multi-line)
            width: Width of the banner in characters (default: 80)
            border_char: Character to use for borders (default: "=")
            center: Whether to center text (default: True)

        Returns:
            Formatted banner string with borders
        """
        border = border_char * width
        formatted_lines = [border]
        for line in message.split("\n"):
            if center:
                formatted_lines.append(" " * ((width - len(line)) // 2) + line)
            else:
                formatted_lines.append("  " + line)
        formatted_lines.append(border)
        return "\n".join(formatted_lines)

    @staticmethod
    def print_banner(
        message: str,
        width: int = DEFAULT_WIDTH,
        border_char: str = DEFAULT_BORDER_CHAR,
        center: bool = True,
    ) -> None:
        print()
        print(BannerFormatter.format_banner(message, width=width, border_char=border_char, center=center))


class SummaryFormatter:
    """Formats the per-platform results of a build."""

    @staticmethod
    def format_summary(result: "MultiBuildResult") -> str:
        """One line per platform: triplet, status, and detail.

        Args:
            result: Result of an orchestrated build

        Returns:
            Multi-line summary
        """
        width = max((len(p.triplet) for p in result.results), default=0)
        lines = []
        for platform, r in result.results.items():
            if r.success:
                detail = r.tarball.name if r.tarball else ""
                if r.cached:
                    detail += " (already built)"
            else:
                detail = r.message.splitlines()[0] if r.message else ""
            lines.append(f"  {platform.triplet:<{width}}  {r.status.name:<20}  {detail}".rstrip())
        return "\n".join(lines)

    @staticmethod
    def print_summary(result: "MultiBuildResult") -> None:
        BannerFormatter.print_banner("Build summary")
        print(SummaryFormatter.format_summary(result))
        print()
        print(f"Build time: {result.build_time:.2f}s")
        if result.manifest_path is not None:
            print(f"Manifest: {result.manifest_path}")
