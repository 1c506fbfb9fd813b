class RopstatError(Exception):
    """Base class for errors raised while analyzing a binary."""


class UpstreamToolFailure(RopstatError):
    """
    The disassembler or symbol-table tool could not produce a usable listing.

    Fatal for the binary being analyzed; the batch continues with the next one.
    """

    def __init__(self, tool, target, reason):
        self.tool = tool
        self.target = target
        self.reason = reason
        super().__init__(f"{tool} failed for {target}: {reason}")


class UnrecognizedRegisterEncoding(RopstatError, ValueError):
    """A numeric field contained a character outside the hexadecimal set."""

    def __init__(self, text, char):
        self.text = text
        self.char = char
        super().__init__(f"Invalid character {char!r} in numeric field {text!r}")
