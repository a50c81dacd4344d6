"""loan-auditor — Trace field-level changes of a record across spreadsheet snapshots."""

__version__ = "0.2.0"

SOURCE_FILE_FIELD: str = "Found_In_File"
"""Reserved field tagging every ingested row with its originating file name."""

IDENTIFIER_HINTS: tuple[str, ...] = ("loan #", "loan#", "loan number")
