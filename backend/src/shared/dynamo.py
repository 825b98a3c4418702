"""
DynamoDB utility functions shared by the mission, runner and schedule stores.
"""
import boto3
from decimal import Decimal
from datetime import datetime
from typing import List, Dict, Any, Optional
from .config import config
from .logging import logger

dynamodb = boto3.resource('dynamodb', region_name=config.AWS_REGION)


def to_dynamo(value: Any) -> Any:
    """
    Convert a Python value into something DynamoDB accepts.
    Floats become Decimal and datetimes become ISO-8601 strings, recursively.
    """
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: to_dynamo(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_dynamo(v) for v in value]
    return value


def get_item(table_name: str, key: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Get a single item from DynamoDB, or None when it does not exist."""
    try:
        table = dynamodb.Table(table_name)
        response = table.get_item(Key=key)
        return response.get('Item')
    except Exception as e:
        logger.error(f"Error getting item from {table_name}: {e}")
        raise


def put_item(table_name: str, item: Dict[str, Any]) -> None:
    """Write (create or overwrite) an item."""
    try:
        table = dynamodb.Table(table_name)
        table.put_item(Item=to_dynamo(item))
    except Exception as e:
        logger.error(f"Error writing item to {table_name}: {e}")
        raise


def update_item(
    table_name: str,
    key: Dict[str, Any],
    update_expression: str,
    expression_values: Dict[str, Any],
    expression_names: Optional[Dict[str, str]] = None,
    condition_expression: Optional[str] = None
) -> None:
    """
    Update an item in DynamoDB.

    ClientErrors (including ConditionalCheckFailedException) are re-raised so
    callers can tell a rejected conditional write apart from success.
    """
    table = dynamodb.Table(table_name)

    params = {
        'Key': key,
        'UpdateExpression': update_expression,
        'ExpressionAttributeValues': to_dynamo(expression_values)
    }

    if expression_names:
        params['ExpressionAttributeNames'] = expression_names
    if condition_expression:
        params['ConditionExpression'] = condition_expression

    table.update_item(**params)


def delete_item(table_name: str, key: Dict[str, Any]) -> None:
    """Delete an item by key."""
    try:
        table = dynamodb.Table(table_name)
        table.delete_item(Key=key)
    except Exception as e:
        logger.error(f"Error deleting item from {table_name}: {e}")
        raise


def scan(
    table_name: str,
    filter_expression: Optional[Any] = None,
    expression_values: Optional[Dict[str, Any]] = None,
    expression_names: Optional[Dict[str, str]] = None
) -> List[Dict[str, Any]]:
    """
    Scan a table, following pagination until every page has been read.

    Args:
        table_name: Name of the DynamoDB table
        filter_expression: Optional filter expression
        expression_values: Values referenced by the filter expression
        expression_names: Attribute name placeholders

    Returns:
        List of items matching the filter
    """
    table = dynamodb.Table(table_name)

    params = {}
    if filter_expression:
        params['FilterExpression'] = filter_expression
    if expression_values:
        params['ExpressionAttributeValues'] = to_dynamo(expression_values)
    if expression_names:
        params['ExpressionAttributeNames'] = expression_names

    items = []
    while True:
        response = table.scan(**params)
        items.extend(response.get('Items', []))
        last_key = response.get('LastEvaluatedKey')
        if not last_key:
            break
        params['ExclusiveStartKey'] = last_key

    return items
