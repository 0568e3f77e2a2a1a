"""Pydantic models for archived export files.

An archive file is a JSON envelope carrying exactly one of two shapes:

* ``ExportedData``   -- time-stamped measurements, one entry per sample.
* ``ExportedEvents`` -- alarm/event records with a per-event sequence number.

Each shape defines the identity key used to deduplicate its entries.
Unknown fields are ignored; scalar fields are coerced leniently so that
producers emitting ``"Id": "17"`` or ``"State": 3`` still parse.
"""

from __future__ import annotations

from typing import Union

from pydantic import BaseModel, ConfigDict, Field

_ENTRY_CONFIG = ConfigDict(
    populate_by_name=True,
    extra="ignore",
    coerce_numbers_to_str=True,
    frozen=True,
)


class Header(BaseModel):
    """Export window description."""

    model_config = _ENTRY_CONFIG

    system_name: str | None = Field(default=None, alias="SystemName")
    start_date: str | None = Field(default=None, alias="StartDate")
    end_date: str | None = Field(default=None, alias="EndDate")


class DataObject(BaseModel):
    """One measurement in an ``ExportedData`` file."""

    model_config = _ENTRY_CONFIG

    id: int | None = Field(default=None, alias="Id")
    fullname: str | None = Field(default=None, alias="Fullname")
    time: str | None = Field(default=None, alias="Time")
    value: float | None = Field(default=None, alias="Value")
    reason: int | None = Field(default=None, alias="Reason")
    state: str | None = Field(default=None, alias="State")
    quality: str | None = Field(default=None, alias="Quality")
    units: str | None = Field(default=None, alias="Units")

    @property
    def identity_key(self) -> tuple[int | None, str | None, str | None]:
        return (self.id, self.fullname, self.time)


class EventObject(BaseModel):
    """One event in an ``ExportedEvents`` file."""

    model_config = _ENTRY_CONFIG

    id: int | None = Field(default=None, alias="Id")
    fullname: str | None = Field(default=None, alias="Fullname")
    severity: str | None = Field(default=None, alias="Severity")
    receipt_time: str | None = Field(default=None, alias="ReceiptTime")
    record_time: str | None = Field(default=None, alias="RecordTime")
    category: str | None = Field(default=None, alias="Category")
    user: str | None = Field(default=None, alias="User")
    area_of_interest: str | None = Field(default=None, alias="AreaOfInterest")
    alarm_state: str | None = Field(default=None, alias="AlarmState")
    message: str | None = Field(default=None, alias="Message")
    encoded_message: str | None = Field(default=None, alias="EncodedMessage")
    seq_no: int | None = Field(default=None, alias="SeqNo")

    @property
    def identity_key(self) -> tuple[int | None, str | None, str | None, int | None]:
        return (self.id, self.fullname, self.record_time, self.seq_no)


class ExportedData(BaseModel):
    """Data shape: identity key is (Id, Fullname, Time)."""

    model_config = _ENTRY_CONFIG

    header: Header | None = Field(default=None, alias="Header")
    objects: list[DataObject] | None = Field(default=None, alias="Objects")

    @property
    def entries(self) -> list[DataObject]:
        return self.objects or []


class ExportedEvents(BaseModel):
    """Events shape: identity key is (Id, Fullname, RecordTime, SeqNo)."""

    model_config = _ENTRY_CONFIG

    header: Header | None = Field(default=None, alias="Header")
    objects: list[EventObject] | None = Field(default=None, alias="Objects")

    @property
    def entries(self) -> list[EventObject]:
        return self.objects or []


ExportShape = Union[ExportedData, ExportedEvents]


class ArchiveEnvelope(BaseModel):
    """Top-level archive file; at most one of the two shapes is expected."""

    model_config = ConfigDict(
        populate_by_name=True,
        extra="ignore",
        coerce_numbers_to_str=True,
    )

    name: str | None = Field(default=None, alias="_name")
    source_model: str | None = Field(default=None, alias="_model")
    timestamp: int | None = Field(default=None, alias="_timestamp")
    exported_data: ExportedData | None = Field(default=None, alias="ExportedData")
    exported_events: ExportedEvents | None = Field(default=None, alias="ExportedEvents")
