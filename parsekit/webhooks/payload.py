# parsekit/webhooks/payload.py
from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from parsekit.errors import WebhookResponseError
from parsekit.models.record import Record, User


BEFORE_TRIGGERS = {"beforeSave", "beforeDelete", "beforeFind"}
AFTER_TRIGGERS = {"afterSave", "afterDelete", "afterFind"}


class WebhookPayload(BaseModel):
    """
    Inbound webhook body. The server sends camelCase keys (installationId,
    functionName, triggerName); fields are exposed snake_case.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    master: bool = False
    user: Optional[Dict[str, Any]] = None
    installation_id: Optional[str] = None
    params: Optional[Dict[str, Any]] = None
    function_name: Optional[str] = None
    object_: Optional[Dict[str, Any]] = Field(default=None, alias="object")
    original: Optional[Dict[str, Any]] = None
    update: Dict[str, Any] = Field(default_factory=dict)
    query: Optional[Dict[str, Any]] = None
    log: Any = None
    objects: List[Any] = Field(default_factory=list)
    trigger_name: Optional[str] = None

    # overrides object.className when the caller already knows the class
    webhook_class: Optional[str] = Field(default=None, exclude=True)

    @field_validator("update", mode="before")
    @classmethod
    def _update_default(cls, v: Any) -> Any:
        return v or {}

    @field_validator("objects", mode="before")
    @classmethod
    def _objects_default(cls, v: Any) -> Any:
        return v or []

    @field_validator("master", mode="before")
    @classmethod
    def _master_bool(cls, v: Any) -> bool:
        return bool(v)

    # ---- kind predicates ----

    @property
    def is_function(self) -> bool:
        return bool(self.function_name)

    @property
    def is_trigger(self) -> bool:
        return bool(self.trigger_name)

    @property
    def is_before_trigger(self) -> bool:
        return self.trigger_name in BEFORE_TRIGGERS

    @property
    def is_after_trigger(self) -> bool:
        return self.trigger_name in AFTER_TRIGGERS

    @property
    def before_save(self) -> bool:
        return self.trigger_name == "beforeSave"

    @property
    def after_save(self) -> bool:
        return self.trigger_name == "afterSave"

    @property
    def before_delete(self) -> bool:
        return self.trigger_name == "beforeDelete"

    @property
    def after_delete(self) -> bool:
        return self.trigger_name == "afterDelete"

    @property
    def before_find(self) -> bool:
        return self.trigger_name == "beforeFind"

    @property
    def after_find(self) -> bool:
        return self.trigger_name == "afterFind"

    @property
    def has_object(self) -> bool:
        return self.is_trigger and bool(self.object_)

    # ---- accessors ----

    @property
    def parse_class(self) -> Optional[str]:
        if self.webhook_class:
            return self.webhook_class
        if not self.object_:
            return None
        return self.object_.get("className")

    @property
    def parse_id(self) -> Optional[str]:
        if not self.object_:
            return None
        return self.object_.get("objectId")

    def user_record(self) -> Optional[User]:
        if not self.user:
            return None
        return User(self.user)

    def original_record(self) -> Optional[Record]:
        if not isinstance(self.original, dict):
            return None
        return Record.build(self.original, self.parse_class)

    def domain_object(self, pristine: bool = False) -> Optional[Record]:
        """
        Record for the trigger's object.

        - function calls: None
        - pristine: plain record built from `object`, nothing marked changed
        - before-triggers with `original`: the persisted record with the
          fields of `object` applied as tracked changes
        - before-triggers without `original`: a new record of the class
        Users also get `update.authData` merged, since auth linking arrives
        as an update delta.
        """
        if not self.has_object:
            return None
        if pristine:
            o = Record.build(self.object_, self.parse_class)
            if o is not None:
                o.clear_changes()
            return o

        if self.is_before_trigger:
            if isinstance(self.original, dict) and self.original:
                o = Record.build(self.original, self.parse_class)
                if o is not None:
                    o.apply_attributes(self.object_, dirty_track=True)
            else:
                klass = Record.class_for(self.parse_class)
                o = klass(dict(self.object_))
            if isinstance(o, User) and self.update.get("authData"):
                o.auth_data = self.update["authData"]
            return o

        return Record.build(self.object_, self.parse_class)

    parse_object = domain_object

    def parse_query(self, client: Any = None):
        """Query equivalent of a beforeFind payload."""
        if not self.parse_class or not isinstance(self.query, dict):
            return None
        from parsekit.query.query import Query

        return Query.from_params(self.parse_class, self.query, client=client)

    # ---- responses ----

    def error(self, message: str = "") -> None:
        """Abort the webhook with {"error": message}."""
        raise WebhookResponseError(message)

    def describe(self) -> str:
        if self.is_trigger:
            return f"{self.trigger_name} {self.parse_class}:{self.parse_id}"
        if self.is_function:
            return f"function {self.function_name}"
        return "unknown"
