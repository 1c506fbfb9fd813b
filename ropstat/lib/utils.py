import os
import shutil
import string
import tempfile
from importlib.metadata import PackageNotFoundError, distribution
from pathlib import Path
from typing import Dict

import lief
from ar import Archive, ArchiveError
from custom_json_diff.lib.utils import file_write
import orjson
from rich import box
from rich.table import Table

from ropstat.config import (
    KNOWN_AR_EXTNS,
    ignore_directories,
    ignore_files,
)
from ropstat.lib.errors import UnrecognizedRegisterEncoding
from ropstat.logger import LOG

HEX_CHARSET = set(string.hexdigits)


def parse_hex_field(text: str) -> int:
    """
    Parses a hexadecimal address or size column.

    An optional 0x prefix is accepted. Any other character outside the
    hexadecimal digits is rejected.

    Args:
        text (str): The field to parse.

    Returns:
        int: The parsed value.

    Raises:
        UnrecognizedRegisterEncoding: If the field contains a non-hex character
            or is empty.
    """
    digits = text.strip()
    if digits[:2] in ("0x", "0X"):
        digits = digits[2:]
    if not digits:
        raise UnrecognizedRegisterEncoding(text, "")
    for c in digits:
        if c not in HEX_CHARSET:
            raise UnrecognizedRegisterEncoding(text, c)
    return int(digits, 16)


def is_ignored_file(file_name):
    """
    Method to check if the file should be ignored

    Args:
        file_name: File name

    Returns:
        bool: True if the file should be ignored. False otherwise.
    """
    if not file_name:
        return False
    file_name = file_name.lower()
    return any(file_name.endswith(ie) for ie in ignore_files)


def is_exe(src):
    """
    Detect if the source is an ELF file objdump can disassemble

    Args:
        src: Source path

    Returns:
         bool: True if ELF file. False otherwise.
    """
    if not os.path.isfile(src):
        return False
    try:
        return lief.is_elf(src)
    except (TypeError, OSError) as e:
        LOG.debug(f"Caught {type(e)} while reading file: {src}")
        return False


def filter_ignored_dirs(dirs):
    """
    Method to filter directory list to remove ignored directories in place

    Args:
        dirs: Directories
    """
    for d in list(dirs):
        if d.lower() in ignore_directories:
            dirs.remove(d)


def find_exe_files(src):
    """
    Method to find ELF files and static library members below a directory

    Args:
        src (str): Source path

    Returns:
        list: List of filtered files
    """
    result = []
    for root, dirs, files in os.walk(src):
        filter_ignored_dirs(dirs)
        for file in sorted(files):
            if is_ignored_file(file):
                continue
            full_path = os.path.join(root, file)
            if full_path.endswith(KNOWN_AR_EXTNS):
                result += extract_ar(full_path)
            elif is_exe(full_path):
                result.append(full_path)
    return result


def find_listing_files(src):
    """
    Method to find saved objdump listings below a directory. Every regular
    file is considered a listing.

    Args:
        src (str): Source path

    Returns:
        list: Sorted list of files
    """
    result = []
    for root, dirs, files in os.walk(src):
        filter_ignored_dirs(dirs)
        result += [os.path.join(root, f) for f in files]
    return sorted(result)


def gen_file_list(src: list[str], listing_mode: bool = False) -> list[str]:
    """Generates a list of files from the given sources.

    Directories are walked recursively. In listing mode every file is taken
    as is, otherwise only ELF files and the objects inside static libraries
    are kept.

    Args:
        src (list[str]): Source files and directories
        listing_mode (bool): Sources are saved objdump listings

    Returns:
        list[str]: A list of files.
    """
    files = []
    for s in src:
        if os.path.isdir(s):
            files += find_listing_files(s) if listing_mode else find_exe_files(s)
            continue
        full_path = os.path.abspath(s)
        if listing_mode:
            if os.path.isfile(full_path):
                files.append(full_path)
            continue
        if full_path.endswith(KNOWN_AR_EXTNS):
            files += extract_ar(full_path)
        elif is_exe(full_path):
            files.append(full_path)
        else:
            LOG.debug(f"Skipping {s}: not an ELF file")
    return files


def extract_ar(ar_file: str, to_dir: str | None = None) -> list[str]:
    """
    Extract the given ar compressed files to the directory specified by to_dir.
    Returns the list of extracted files
    """
    if not to_dir:
        to_dir = tempfile.mkdtemp(prefix="ar-temp-", dir=os.getenv("ROPSTAT_TEMP_DIR"))
    files_list = []
    with open(ar_file, "rb") as fp:
        try:
            with Archive(fp) as archive:
                for index, entry in enumerate(archive):
                    # This workarounds a bug in ar that returns multiple names
                    file_name = entry.name.split("\n")[0].removesuffix("/")
                    file_name = os.path.basename(file_name)
                    if file_name in ("", ".", ".."):
                        continue
                    # Members may repeat a name or carry a path
                    member_dir = os.path.join(to_dir, str(index))
                    os.makedirs(member_dir, exist_ok=True)
                    afile = os.path.join(member_dir, file_name)
                    with open(afile, "wb") as output:
                        output.write(archive.open(entry, "rb").read())
                    if is_exe(afile):
                        files_list.append(afile)
        except (ArchiveError, ValueError) as e:
            LOG.warning(f"Failed to extract {ar_file}: {e}")
    return files_list


def check_command(cmd):
    """
    Method to check if command is available
    :return True if command is available in PATH. False otherwise
    """
    cpath = shutil.which(cmd, mode=os.F_OK | os.X_OK)
    return cpath is not None


def get_version():
    """
    Returns the version of ropstat
    """
    try:
        return distribution("ropstat").version
    except PackageNotFoundError:
        return "dev"


def create_table(title: str, *columns: str) -> Table:
    """
    Creates a table in the report style.

    Args:
        title: The title of the table.
        columns: Column headers.

    Returns:
        Table: The created table.
    """
    table = Table(
        title=title,
        box=box.DOUBLE_EDGE,
        header_style="bold magenta",
        show_lines=True,
    )
    for col in columns:
        table.add_column(col)
    return table


def export_metadata(directory: str, metadata: Dict, mtype: str) -> str:
    """
    Exports metadata to file. Returns the file name.
    """
    if not os.path.exists(directory):
        os.makedirs(directory)
    outfile = str(Path(directory) / f"{mtype.lower()}.json")
    output = orjson.dumps(
        metadata, default=json_serializer, option=orjson.OPT_INDENT_2
    ).decode("utf-8", "ignore")
    file_write(outfile, output, success_msg="", log=LOG)
    return outfile


def json_serializer(obj):
    """JSON serializer to help serialize problematic types such as bytes and tuples"""
    if isinstance(obj, bytes):
        try:
            return obj.decode("utf-8")
        except UnicodeDecodeError:
            return ""
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    return str(obj)
