"""
Pydantic adapter - turns BaseModel classes into JSON Schema dicts.

Nested models come out of Pydantic as "$defs" plus "#/$defs/..." references,
which the schema parser resolves locally.

Usage:
    ```python
    from pydantic import BaseModel
    from pocket_llama.schema.pydantic_adapter import pydantic_to_schema

    class Address(BaseModel):
        city: str

    class User(BaseModel):
        name: str
        address: Address

    schema = pydantic_to_schema(User)
    ```
"""

from typing import Any, Dict

from pydantic import BaseModel

from pocket_llama.errors import ParseError


def pydantic_to_schema(model: type) -> Dict[str, Any]:
    """
    Generate the JSON Schema of a Pydantic model class.

    Args:
        model: A BaseModel subclass

    Returns:
        Dict: JSON Schema in Pydantic's validation mode

    Raises:
        ParseError: If the class is not a Pydantic model
    """
    if not issubclass(model, BaseModel):
        raise ParseError(
            f"Unsupported schema construct: {model.__name__} is not a pydantic BaseModel"
        )
    return model.model_json_schema()
