"""DynamoDB document store with environment-aware table names.

All mutations are single-item operations; conditional writes report a
failed condition as a return value instead of raising, which is how the
ledger and the purchase store implement first-writer-wins.
"""

from typing import Any

import boto3
from boto3.dynamodb.conditions import Key
from botocore.exceptions import BotoCoreError, ClientError
from botocore.exceptions import ConnectionError as BotoConnectionError

from wedly_shared.config import Settings, get_settings
from wedly_shared.models.errors import ErrorDescription, register_error_describer

CONDITIONAL_CHECK_FAILED = "ConditionalCheckFailedException"

USERS_TABLE = "users"
USERS_EMAIL_INDEX = "email-index"


def _describe_client_error(error: ClientError) -> ErrorDescription:
    details = error.response.get("Error", {})
    return ErrorDescription(
        message=f"AWS {error.operation_name} failed: {details.get('Message', '')}",
        code=details.get("Code"),
        type="ClientError",
    )


def _describe_botocore_error(error: BotoCoreError) -> ErrorDescription:
    return ErrorDescription(
        message=str(error),
        code="connection" if isinstance(error, BotoConnectionError) else None,
        type=type(error).__name__,
    )


register_error_describer(ClientError, _describe_client_error)
register_error_describer(BotoCoreError, _describe_botocore_error)


# Module-level singleton for connection reuse
_document_store_instance: "DocumentStore | None" = None


def get_document_store() -> "DocumentStore":
    """Get or create the singleton document store.

    Returns:
        Shared DocumentStore instance
    """
    global _document_store_instance
    if _document_store_instance is None:
        _document_store_instance = DocumentStore()
    return _document_store_instance


def reset_document_store() -> None:
    """Reset the singleton instance (for testing only).

    This allows tests to create a fresh store inside a mock_aws context.
    """
    global _document_store_instance
    _document_store_instance = None


class DocumentStore:
    """Generic DynamoDB operations keyed by logical table name."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._dynamodb = boto3.resource("dynamodb")

    def table_name(self, table: str) -> str:
        """Get full table name with prefix."""
        return self._settings.table_name(table)

    def _get_table(self, table: str) -> Any:
        return self._dynamodb.Table(self.table_name(table))

    def get_item(
        self,
        table: str,
        key: dict[str, Any],
        *,
        consistent_read: bool = True,
    ) -> dict[str, Any] | None:
        """Get a single item by key.

        Args:
            table: Table name without prefix
            key: Primary key dict
            consistent_read: Use a strongly consistent read

        Returns:
            Item dict or None if not found
        """
        response = self._get_table(table).get_item(Key=key, ConsistentRead=consistent_read)
        item: dict[str, Any] | None = response.get("Item")
        return item

    def put_item(
        self,
        table: str,
        item: dict[str, Any],
        condition_expression: str | None = None,
        expression_attribute_values: dict[str, Any] | None = None,
        expression_attribute_names: dict[str, str] | None = None,
    ) -> bool:
        """Put an item into the table.

        Args:
            table: Table name without prefix
            item: Item to store
            condition_expression: Optional condition for write
            expression_attribute_values: Values referenced by the condition
            expression_attribute_names: Names referenced by the condition

        Returns:
            True if written, False if the condition failed
        """
        try:
            kwargs: dict[str, Any] = {"Item": item}
            if condition_expression:
                kwargs["ConditionExpression"] = condition_expression
            if expression_attribute_values:
                kwargs["ExpressionAttributeValues"] = expression_attribute_values
            if expression_attribute_names:
                kwargs["ExpressionAttributeNames"] = expression_attribute_names

            self._get_table(table).put_item(**kwargs)
            return True
        except ClientError as e:
            if e.response["Error"]["Code"] == CONDITIONAL_CHECK_FAILED:
                return False
            raise

    def update_item(
        self,
        table: str,
        key: dict[str, Any],
        update_expression: str,
        expression_attribute_values: dict[str, Any],
        expression_attribute_names: dict[str, str] | None = None,
        condition_expression: str | None = None,
    ) -> dict[str, Any] | None:
        """Update an item with expressions.

        Args:
            table: Table name without prefix
            key: Primary key dict
            update_expression: DynamoDB update expression
            expression_attribute_values: Values for expression
            expression_attribute_names: Names for expression (for reserved words)
            condition_expression: Optional condition for update

        Returns:
            Updated attributes or None if condition failed
        """
        try:
            kwargs: dict[str, Any] = {
                "Key": key,
                "UpdateExpression": update_expression,
                "ExpressionAttributeValues": expression_attribute_values,
                "ReturnValues": "ALL_NEW",
            }
            if expression_attribute_names:
                kwargs["ExpressionAttributeNames"] = expression_attribute_names
            if condition_expression:
                kwargs["ConditionExpression"] = condition_expression

            response = self._get_table(table).update_item(**kwargs)
            attrs: dict[str, Any] | None = response.get("Attributes")
            return attrs
        except ClientError as e:
            if e.response["Error"]["Code"] == CONDITIONAL_CHECK_FAILED:
                return None
            raise

    def query(
        self,
        table: str,
        key_condition: Any,
        index_name: str | None = None,
        limit: int | None = None,
        scan_index_forward: bool = True,
    ) -> list[dict[str, Any]]:
        """Query table or GSI.

        Args:
            table: Table name without prefix
            key_condition: Boto3 Key condition
            index_name: GSI name (optional)
            limit: Max items to return
            scan_index_forward: Sort order (True=ascending)

        Returns:
            List of items
        """
        kwargs: dict[str, Any] = {
            "KeyConditionExpression": key_condition,
            "ScanIndexForward": scan_index_forward,
        }
        if index_name:
            kwargs["IndexName"] = index_name
        if limit:
            kwargs["Limit"] = limit

        response = self._get_table(table).query(**kwargs)
        items: list[dict[str, Any]] = response.get("Items", [])
        return items

    def query_by_gsi(
        self,
        table: str,
        index_name: str,
        partition_key_name: str,
        partition_key_value: str,
        sort_key_condition: Any | None = None,
    ) -> list[dict[str, Any]]:
        """Query a GSI by partition key.

        Args:
            table: Table name without prefix
            index_name: GSI name
            partition_key_name: Name of partition key attribute
            partition_key_value: Value to query
            sort_key_condition: Optional sort key condition

        Returns:
            List of items
        """
        key_condition = Key(partition_key_name).eq(partition_key_value)
        if sort_key_condition is not None:
            key_condition = key_condition & sort_key_condition

        return self.query(table, key_condition, index_name=index_name)

    def get_user_by_email(self, email: str) -> dict[str, Any] | None:
        """Get a buyer account by email address using GSI.

        Args:
            email: Account email address

        Returns:
            User dict or None if not found
        """
        results = self.query_by_gsi(
            table=USERS_TABLE,
            index_name=USERS_EMAIL_INDEX,
            partition_key_name="email",
            partition_key_value=email.strip().lower(),
        )
        return results[0] if results else None
