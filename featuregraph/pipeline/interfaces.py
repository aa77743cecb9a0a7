"""Interface for the evidence extraction collaborator.

Turning a PDF, screenshot, API spec or requirements sheet into evidence is
format-specific work done outside this package. The job queue only needs
something that, given a document record, returns the evidence found in it.
"""

from abc import ABC, abstractmethod

from featuregraph.evidence import Evidence
from featuregraph.job import Document


class EvidenceExtractorInterface(ABC):
    """Extract evidence items from one document.

    Implementations might use:
        - PDF or spreadsheet parsers for requirement documents
        - vision models for UI screenshots
        - OpenAPI readers for endpoint and payload evidence
    """

    @abstractmethod
    async def extract(self, document: Document) -> list[Evidence]:
        """Return the evidence found in `document`.

        Every returned item belongs to `document.document_id`. Raise
        `RetryableError` for transient failures and `NonRetryableError`
        for documents that can never be processed.
        """
