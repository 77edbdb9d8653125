"""User curation of staged assets."""

import logging
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Set

from .common import remove_path_quietly
from .scanner import AssetKind
from .staging import AssetRecord

logger = logging.getLogger(__name__)


class SessionState(Enum):
    OPEN = "open"
    FINALIZED = "finalized"
    CANCELLED = "cancelled"
    SUPERSEDED = "superseded"


class CurationSession:
    """Keep/discard selection over one staging folder.
    
    Every record starts out kept. ``finalize()`` deletes the staged files of
    records that are no longer kept; ``cancel()`` deletes the whole staging
    folder. Deletion failures are logged and never raised.
    
    Used as a context manager, the session is cancelled when the block exits
    with an exception before it was finalized.
    """
    
    def __init__(self, app_name: str, kind: AssetKind, staging_dir: Path, records: List[AssetRecord]):
        self.app_name = app_name
        self.kind = kind
        self.staging_dir = Path(staging_dir)
        self.records = list(records)
        self._ids = {record.id for record in self.records}
        self._kept: Set[str] = set(self._ids)
        self.state = SessionState.OPEN
    
    @property
    def kept_ids(self) -> Set[str]:
        return set(self._kept)
    
    @property
    def kept_records(self) -> List[AssetRecord]:
        return [r for r in self.records if r.id in self._kept]
    
    @property
    def discarded_records(self) -> List[AssetRecord]:
        return [r for r in self.records if r.id not in self._kept]
    
    @property
    def is_open(self) -> bool:
        return self.state is SessionState.OPEN
    
    def is_kept(self, record_id: str) -> bool:
        return record_id in self._kept
    
    def toggle(self, record_id: str) -> bool:
        """Flip whether a record is kept.
        
        Returns:
            True if the record is kept after the call
            
        Raises:
            KeyError: If the id does not belong to this session
        """
        self._require_open()
        if record_id not in self._ids:
            raise KeyError(record_id)
        if record_id in self._kept:
            self._kept.discard(record_id)
            return False
        self._kept.add(record_id)
        return True
    
    def select_all(self) -> None:
        self._require_open()
        self._kept = set(self._ids)
    
    def deselect_all(self) -> None:
        self._require_open()
        self._kept.clear()
    
    def keep_only(self, record_ids: Iterable[str]) -> None:
        """Replace the selection with the given ids.
        
        Raises:
            KeyError: If any id does not belong to this session
        """
        self._require_open()
        wanted = set(record_ids)
        unknown = wanted - self._ids
        if unknown:
            raise KeyError(sorted(unknown)[0])
        self._kept = wanted
    
    def finalize(self) -> List[AssetRecord]:
        """Delete staged files of records that are not kept.
        
        Returns:
            The kept records
        """
        if not self.is_open:
            logger.warning(f"Session for {self.app_name} already {self.state.value}, nothing to finalize")
            return self.kept_records if self.state is SessionState.FINALIZED else []
        
        for record in self.discarded_records:
            if remove_path_quietly(record.staged_location):
                logger.debug(f"Deleted {record.name}")
        
        self.state = SessionState.FINALIZED
        logger.info(
            f"Kept {len(self._kept)} of {len(self.records)} {self.kind.value} asset(s) for {self.app_name}"
        )
        return self.kept_records
    
    def cancel(self) -> None:
        """Discard the staging folder and everything in it."""
        if not self.is_open:
            logger.debug(f"Session for {self.app_name} already {self.state.value}")
            return
        remove_path_quietly(self.staging_dir)
        self.state = SessionState.CANCELLED
        logger.info(f"Discarded {self.kind.value} staging folder for {self.app_name}")
    
    def supersede(self) -> None:
        """Close the session without touching its folder.
        
        Called when a newer extraction for the same application and kind
        takes the staging folder over.
        """
        if self.is_open:
            self.state = SessionState.SUPERSEDED
            logger.info(f"{self.kind.value} session for {self.app_name} superseded by a newer extraction")
    
    def _require_open(self) -> None:
        if not self.is_open:
            raise RuntimeError(f"Curation session is {self.state.value}")
    
    def __enter__(self) -> "CurationSession":
        return self
    
    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if exc_type is not None and self.is_open:
            self.cancel()
    
    def __len__(self) -> int:
        return len(self.records)
