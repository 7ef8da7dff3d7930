"""Capability adapters wrapping external inspectors.

Available adapters (all implement
:class:`~uploadgate.core.adapters.base.InspectorAdapter`):

**Content sniffers**

* :class:`~uploadgate.core.adapters.content.LibmagicSniffer`: python-magic (default)
* :class:`~uploadgate.core.adapters.content.FileCommandSniffer`: ``file -b``

**String extraction**

* :class:`~uploadgate.core.adapters.strings.StringsExtractor`: ``strings -a``

**Metadata / hidden content** (grouped by
:class:`~uploadgate.core.adapters.metadata.MetadataInspector`)

* :class:`~uploadgate.core.adapters.metadata.ExifToolProbe`
* :class:`~uploadgate.core.adapters.metadata.BinwalkProbe`

**Antivirus**

* :class:`~uploadgate.core.adapters.antivirus.ClamdScanner`: clamd daemon (default)
* :class:`~uploadgate.core.adapters.antivirus.ClamscanScanner`: ``clamscan``
"""

from uploadgate.core.adapters.antivirus import ClamdScanner, ClamscanScanner
from uploadgate.core.adapters.base import CommandInspector, InspectionFinding, InspectorAdapter
from uploadgate.core.adapters.content import FileCommandSniffer, LibmagicSniffer
from uploadgate.core.adapters.metadata import BinwalkProbe, ExifToolProbe, MetadataInspector
from uploadgate.core.adapters.strings import StringsExtractor

__all__ = [
    "BinwalkProbe",
    "ClamdScanner",
    "ClamscanScanner",
    "CommandInspector",
    "ExifToolProbe",
    "FileCommandSniffer",
    "InspectionFinding",
    "InspectorAdapter",
    "LibmagicSniffer",
    "MetadataInspector",
    "StringsExtractor",
]
