import logging
import typing

import boto3
from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError
from pydantic import ValidationError

from progress_ledger.ledger.progress_ledger import ProgressLedger
from progress_ledger.models.progress_ledger_models import (
    FeeTransferModel,
    LedgerStateModel,
    ProgressUpdateModel,
    ProgressWithUserModel,
)
from progress_ledger.utils.base_types import LedgerId, ProgressId

_LOGGER = logging.getLogger(__name__)
_LOGGER.setLevel(logging.INFO)

CONFIG_ITEM_KEY = "CONFIG"
PROGRESS_PREFIX = "PROGRESS#"
UPDATE_PREFIX = "UPDATE#"
TRANSFER_PREFIX = "TRANSFER#"

_KEY_ATTRIBUTES = ("ledgerId", "itemKey")


def _progress_key(prefix: str, progress_id: ProgressId) -> str:
    # Zero padding keeps the sort key order equal to the id order.
    return f"{prefix}{progress_id:012d}"


def _progress_id_from_key(item_key: str, prefix: str) -> ProgressId:
    return ProgressId(int(item_key[len(prefix) :]))


def _strip_keys(item: dict[str, typing.Any]) -> dict[str, typing.Any]:
    return {k: v for k, v in item.items() if k not in _KEY_ATTRIBUTES}


class LedgerConflictError(Exception):
    """Raised when another writer saved the ledger after it was loaded."""

    def __init__(self, ledger_id: LedgerId, revision: int) -> None:
        super().__init__(f"Ledger {ledger_id} was changed after revision {revision}.")
        self.ledger_id = ledger_id
        self.revision = revision


class ProgressLedgerTable:
    """
    Data Abstraction Layer persisting progress ledger snapshots in DynamoDB.

    Table Schema:
      - PK: ledgerId (String)
      - SK: itemKey (String)
          "CONFIG"                 -> ledger-global fields
          "PROGRESS#<id>"          -> progress record with owner and courseId
          "UPDATE#<id>"            -> most recent update audit entry for a record
          "TRANSFER#<id>"          -> fee-transfer intent emitted by the submission of <id>

    Hashes are stored as hex strings. Transfer items form an outbox for the external
    settlement service and are not loaded back into the ledger.

    Every save is one transaction conditioned on the CONFIG revision, so each ledger
    accepts one writer per revision.
    """

    def __init__(self, table_name: str) -> None:
        self.client = boto3.resource("dynamodb")
        self.table = self.client.Table(table_name)

    def _query_all_items(self, ledger_id: LedgerId) -> list[dict[str, typing.Any]]:
        items: list[dict[str, typing.Any]] = []
        query_kwargs: dict[str, typing.Any] = {"KeyConditionExpression": Key("ledgerId").eq(ledger_id)}
        while True:
            response = self.table.query(**query_kwargs)
            items.extend(response.get("Items", []))
            last_evaluated_key = response.get("LastEvaluatedKey")
            if not last_evaluated_key:
                return items
            _LOGGER.info(f"Fetching next page of ledger items for ledger_id: {ledger_id}")
            query_kwargs["ExclusiveStartKey"] = last_evaluated_key

    def load_ledger_state(self, ledger_id: LedgerId) -> typing.Optional[LedgerStateModel]:
        """
        Rebuilds a ledger snapshot from its stored items.

        :param ledger_id: The ID of the ledger.
        :return: LedgerStateModel if the ledger has been stored before, else None.
        """
        _LOGGER.info(f"Loading ledger state for ledger_id: {ledger_id}")
        try:
            items = self._query_all_items(ledger_id)
        except ClientError as e:
            _LOGGER.error(f"Failed to load ledger {ledger_id}: {e.response['Error']['Message']}")
            raise

        config_item: typing.Optional[dict[str, typing.Any]] = None
        progress_by_id: dict[ProgressId, ProgressWithUserModel] = {}
        progress_updates: dict[ProgressId, ProgressUpdateModel] = {}

        for item in items:
            item_key = str(item["itemKey"])
            if item_key == CONFIG_ITEM_KEY:
                config_item = _strip_keys(item)
            elif item_key.startswith(PROGRESS_PREFIX):
                progress_id = _progress_id_from_key(item_key, PROGRESS_PREFIX)
                progress_by_id[progress_id] = ProgressWithUserModel.model_validate(_strip_keys(item))
            elif item_key.startswith(UPDATE_PREFIX):
                progress_id = _progress_id_from_key(item_key, UPDATE_PREFIX)
                progress_updates[progress_id] = ProgressUpdateModel.model_validate(_strip_keys(item))

        if config_item is None:
            _LOGGER.info(f"No stored ledger found for ledger_id: {ledger_id}")
            return None

        try:
            return LedgerStateModel.model_validate(
                {**config_item, "progressById": progress_by_id, "progressUpdates": progress_updates}
            )
        except ValidationError as ve:
            _LOGGER.error(f"Failed to validate stored ledger {ledger_id}: {ve}", exc_info=True)
            raise

    def _put(self, item: dict[str, typing.Any], **condition: typing.Any) -> dict[str, typing.Any]:
        return {"Put": {"TableName": self.table.name, "Item": item, **condition}}

    def save_ledger_changes(
        self,
        ledger_id: LedgerId,
        ledger: ProgressLedger,
        progress_id: typing.Optional[ProgressId] = None,
        fee_transfers: typing.Optional[list[FeeTransferModel]] = None,
        new_record: bool = False,
    ) -> None:
        """
        Atomically writes the ledger-global fields plus the items touched by one operation.

        The write only succeeds if the stored revision is still the one the ledger was loaded
        from, so two requests working from the same snapshot cannot both land.

        :param ledger_id: The ID of the ledger.
        :param ledger: The ledger after the operation succeeded.
        :param progress_id: The record the operation created or changed, if any.
        :param fee_transfers: Fee intents emitted by the operation, keyed by `progress_id`.
        :param new_record: True when the operation created `progress_id`.
        :raises LedgerConflictError: If another writer saved the ledger first.
        """
        expected_revision = ledger.revision
        state = ledger.to_state().model_copy(update={"revision": expected_revision + 1})
        config_item = state.model_dump(
            mode="json", exclude={"progressById", "progressUpdates", "feeTransfers"}, exclude_none=True
        )
        if expected_revision == 0:
            config_condition: dict[str, typing.Any] = {"ConditionExpression": "attribute_not_exists(itemKey)"}
        else:
            config_condition = {
                "ConditionExpression": "#revision = :expected",
                "ExpressionAttributeNames": {"#revision": "revision"},
                "ExpressionAttributeValues": {":expected": expected_revision},
            }
        transact_items = [
            self._put({"ledgerId": ledger_id, "itemKey": CONFIG_ITEM_KEY, **config_item}, **config_condition)
        ]

        if progress_id is not None:
            record = ledger.get_progress_by_id(progress_id)
            if record is not None:
                record_item = {
                    "ledgerId": ledger_id,
                    "itemKey": _progress_key(PROGRESS_PREFIX, progress_id),
                    **record.model_dump(mode="json"),
                }
                record_condition = {"ConditionExpression": "attribute_not_exists(itemKey)"} if new_record else {}
                transact_items.append(self._put(record_item, **record_condition))
            update = ledger.get_progress_update(progress_id)
            if update is not None:
                transact_items.append(
                    self._put(
                        {
                            "ledgerId": ledger_id,
                            "itemKey": _progress_key(UPDATE_PREFIX, progress_id),
                            **update.model_dump(mode="json"),
                        }
                    )
                )
            for transfer in fee_transfers or []:
                transact_items.append(
                    self._put(
                        {
                            "ledgerId": ledger_id,
                            "itemKey": _progress_key(TRANSFER_PREFIX, progress_id),
                            **transfer.model_dump(mode="json"),
                        },
                        ConditionExpression="attribute_not_exists(itemKey)",
                    )
                )

        try:
            self.client.meta.client.transact_write_items(TransactItems=transact_items)
        except ClientError as e:
            if e.response["Error"]["Code"] == "TransactionCanceledException":
                reasons = [reason.get("Code") for reason in e.response.get("CancellationReasons", [])]
                _LOGGER.warning(f"Save of ledger {ledger_id} at revision {expected_revision} was cancelled: {reasons}")
                raise LedgerConflictError(ledger_id, expected_revision) from e
            _LOGGER.error(
                f"Error saving ledger {ledger_id}: {e.response['Error']['Message']}",
                exc_info=True,
            )
            raise

        ledger.revision = expected_revision + 1
        _LOGGER.info(f"Saved {len(transact_items)} item(s) for ledger_id: {ledger_id} at revision {ledger.revision}")

    def get_pending_fee_transfers(self, ledger_id: LedgerId) -> dict[ProgressId, FeeTransferModel]:
        """
        Lists fee-transfer intents still waiting for settlement.

        :param ledger_id: The ID of the ledger.
        :return: Mapping of the submitting progress id to its fee intent.
        """
        transfers: dict[ProgressId, FeeTransferModel] = {}
        query_kwargs: dict[str, typing.Any] = {
            "KeyConditionExpression": Key("ledgerId").eq(ledger_id) & Key("itemKey").begins_with(TRANSFER_PREFIX)
        }
        try:
            while True:
                response = self.table.query(**query_kwargs)
                for item in response.get("Items", []):
                    progress_id = _progress_id_from_key(str(item["itemKey"]), TRANSFER_PREFIX)
                    try:
                        transfers[progress_id] = FeeTransferModel.model_validate(_strip_keys(item))
                    except ValidationError as ve:
                        _LOGGER.warning(f"Skipping invalid transfer item for ledger {ledger_id}: {item}. Error: {ve}")
                last_evaluated_key = response.get("LastEvaluatedKey")
                if not last_evaluated_key:
                    return transfers
                query_kwargs["ExclusiveStartKey"] = last_evaluated_key
        except ClientError as e:
            _LOGGER.error(f"Failed to query fee transfers for ledger {ledger_id}: {e.response['Error']['Message']}")
            raise

    def mark_fee_transfer_settled(self, ledger_id: LedgerId, progress_id: ProgressId) -> None:
        """Removes a settled fee intent from the outbox."""
        try:
            self.table.delete_item(Key={"ledgerId": ledger_id, "itemKey": _progress_key(TRANSFER_PREFIX, progress_id)})
            _LOGGER.info(f"Fee transfer for progress {progress_id} settled on ledger {ledger_id}.")
        except ClientError as e:
            _LOGGER.error(f"Failed to settle fee transfer {progress_id}: {e.response['Error']['Message']}")
            raise
