import os
import subprocess
import sys

from ropstat.config import OBJDUMP_CMD, READELF_CMD, TEXT_SECTION_REGEX
from ropstat.lib.errors import UpstreamToolFailure
from ropstat.lib.utils import parse_hex_field
from ropstat.logger import LOG


def exec_tool(args, cwd=None, timeout=None):
    """
    Convenience method to invoke cli tools and capture their raw output

    :param args: Command line arguments
    :param cwd: Working directory
    :param timeout: Seconds to wait before giving up
    :return: The stdout bytes of the command
    :raises UpstreamToolFailure: If the command cannot be run or exits with an error
    """
    LOG.debug(f'⚡︎ Executing "{" ".join(args)}"')
    try:
        result = subprocess.run(
            args,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=cwd,
            env=os.environ.copy(),
            shell=sys.platform == "win32",
            timeout=timeout,
            check=False,
        )
    except FileNotFoundError as e:
        raise UpstreamToolFailure(args[0], args[-1], "command not found") from e
    except (subprocess.SubprocessError, OSError) as e:
        raise UpstreamToolFailure(args[0], args[-1], str(e)) from e
    if result.returncode != 0:
        stderr = result.stderr.decode("utf-8", "replace").strip()
        raise UpstreamToolFailure(
            args[0], args[-1], f"exit code {result.returncode}: {stderr}"
        )
    return result.stdout


def decode_output(tool, target, output):
    """Decodes tool output strictly as UTF-8."""
    try:
        return output.decode("utf-8")
    except UnicodeDecodeError as e:
        raise UpstreamToolFailure(tool, target, f"output is not valid UTF-8 ({e.reason})") from e


def disassemble(target, objdump_cmd=OBJDUMP_CMD, timeout=None):
    """Returns the objdump -d listing of a binary"""
    output = exec_tool([objdump_cmd, "-d", target], timeout=timeout)
    return decode_output(objdump_cmd, target, output)


def read_elf_info(target, readelf_cmd=READELF_CMD, timeout=None):
    """Returns the readelf -a dump of a binary"""
    output = exec_tool([readelf_cmd, "-a", target], timeout=timeout)
    return decode_output(readelf_cmd, target, output)


def read_listing(path):
    """
    Reads a saved objdump listing from disk.

    Undecodable files are reported like a failing disassembler.
    """
    try:
        with open(path, "rb") as fp:
            data = fp.read()
    except OSError as e:
        raise UpstreamToolFailure("listing", path, str(e)) from e
    return decode_output("listing", path, data)


def count_function_symbols(lines):
    """
    Counts FUNC symbols in a readelf symbol table, leaving out WEAK ones.

    Args:
        lines (list[str]): readelf -a output lines.

    Returns:
        int: The number of strong function symbols.
    """
    return sum(1 for l in lines if "FUNC" in l and "WEAK" not in l)


def text_section_size(lines):
    """
    Sums the sizes of all .text sections in a readelf section header table.

    Args:
        lines (list[str]): readelf -a output lines.

    Returns:
        int: Total .text size in bytes.
    """
    total = 0
    for l in lines:
        if m := TEXT_SECTION_REGEX.search(l):
            size = parse_hex_field(m.group(3))
            LOG.debug(f"Size: '{m.group(3)}' - {size}")
            total += size
    return total
