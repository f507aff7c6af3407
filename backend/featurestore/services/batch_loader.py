"""Atomic batch insertion of normalized features into a feature store.

A batch runs inside one exclusive store session:

    opened -> inserting(n) -> committed | rolled_back

Both end states are terminal. The session commits only when every insert
succeeded, rolls back on any error or cancellation (including
``BaseException`` such as ``KeyboardInterrupt`` or task cancellation), and
is always released.

Example:
    Load features produced by the normalizer:
        >>> from featurestore.services import batch_loader
        >>> result = batch_loader.load_features(features, store)
        >>> result.inserted
        3
"""

from __future__ import annotations

import contextlib
import dataclasses
import enum
import json
import logging
from typing import TYPE_CHECKING

from featurestore.core import errors

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

    from featurestore.db import database
    from featurestore.db import models as db_models

logger = logging.getLogger(__name__)


class BatchState(enum.Enum):
    OPENED = "opened"
    INSERTING = "inserting"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


@dataclasses.dataclass
class LoadResult:
    """Outcome of a committed batch."""

    ids: list[int] = dataclasses.field(default_factory=list)

    @property
    def inserted(self) -> int:
        return len(self.ids)


class BatchSession:
    """Tracks the state of one store session for the duration of a batch."""

    def __init__(self, session: database.StoreSession) -> None:
        self._session = session
        self.state = BatchState.OPENED
        self.ids: list[int] = []

    def insert(self, feature: db_models.Feature) -> int:
        """Insert one feature, returning the id assigned by the store.

        A rejection is reported with the source layer and record index of
        the feature when it was decoded from a shapefile, otherwise with
        its position in the batch.

        Raises:
            LoadError: If the batch is already finished or the store
                rejects the feature.
        """
        if self.state not in (BatchState.OPENED, BatchState.INSERTING):
            raise errors.LoadError(f"Cannot insert into a {self.state.value} batch")
        self.state = BatchState.INSERTING
        index = len(self.ids)
        if feature.source_index is not None:
            index = feature.source_index
        try:
            row_id = self._session.insert(
                json.dumps(feature.geometry),
                json.dumps(feature.properties),
            )
        except errors.StoreWriteError as exc:
            raise errors.LoadError(
                f"Feature {index} rejected by store: {exc.message}",
                index=index,
                layer=feature.source_layer,
            ) from exc
        self.ids.append(row_id)
        return row_id

    def commit(self) -> None:
        try:
            self._session.commit()
        except errors.StoreWriteError as exc:
            self.rollback()
            raise errors.LoadError(f"Commit failed: {exc.message}") from exc
        self.state = BatchState.COMMITTED

    def rollback(self) -> None:
        if self.state in (BatchState.COMMITTED, BatchState.ROLLED_BACK):
            return
        self.state = BatchState.ROLLED_BACK
        self._session.rollback()


@contextlib.contextmanager
def open_batch(store: database.FeatureStoreProtocol) -> Iterator[BatchSession]:
    """Open an exclusive batch session, committing on normal exit.

    Raises:
        StoreUnavailableError: If no session can be acquired.
        LoadError: If the commit fails (the batch is rolled back).
    """
    session = store.open_session()
    batch = BatchSession(session)
    try:
        yield batch
        batch.commit()
    except BaseException:
        batch.rollback()
        raise
    finally:
        session.close()


def load_features(
    features: Iterable[db_models.Feature],
    store: database.FeatureStoreProtocol,
) -> LoadResult:
    """Insert every feature as a single atomic operation.

    Either every feature becomes durable or none does.

    Args:
        features: Normalized features, in any order.
        store: Feature store providing the session.

    Returns:
        LoadResult with the ids assigned by the store.

    Raises:
        LoadError: If any insert or the commit fails; carries the index of
            the offending feature when one is known.
        StoreUnavailableError: If no session can be acquired.
    """
    try:
        with open_batch(store) as batch:
            for feature in features:
                batch.insert(feature)
    except errors.LoadError as exc:
        logger.error("Batch rolled back: %s", exc.message)
        raise

    logger.info("Batch committed: %d features", len(batch.ids))
    return LoadResult(ids=list(batch.ids))
