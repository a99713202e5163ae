"""Signature-based virus scanner.

Matches uploaded bytes against a list of known byte signatures. The default
list holds the EICAR test string so the document pipeline can be exercised
end to end; real deployments put an antivirus engine behind
``VirusScannerPort``.
"""

import logging
from typing import Iterable, Optional

from clinical_vault.domain.enums import VirusScanResult
from clinical_vault.domain.ports import VirusScannerPort

logger = logging.getLogger(__name__)

EICAR_SIGNATURE = b"X5O!P%@AP[4\\PZX54(P^)7CC)7}$EICAR-STANDARD-ANTIVIRUS-TEST-FILE!$H+H*"


class SignatureVirusScanner(VirusScannerPort):

    def __init__(self, signatures: Optional[Iterable[bytes]] = None):
        self.signatures = tuple(signatures) if signatures is not None else (EICAR_SIGNATURE,)

    def scan(self, data: bytes) -> VirusScanResult:
        for signature in self.signatures:
            if signature in data:
                logger.warning("Virus signature detected in uploaded content")
                return VirusScanResult.INFECTED
        return VirusScanResult.CLEAN
