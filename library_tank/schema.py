"""Protobuf messages for the library service's ``AddBook`` RPC.

The descriptors are declared here rather than compiled from ``library.proto`` so
the gRPC transport works without generated stubs on the load-generating host.
"""

from __future__ import annotations

from typing import Any

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory, timestamp_pb2
from google.protobuf.json_format import MessageToDict

PACKAGE = "library"
SERVICE = "Library"
ADD_BOOK_METHOD = f"/{PACKAGE}.{SERVICE}/AddBook"

_FIELD = descriptor_pb2.FieldDescriptorProto


def _string(
    message: descriptor_pb2.DescriptorProto, name: str, number: int, repeated: bool = False
) -> None:
    message.field.add(
        name=name,
        number=number,
        type=_FIELD.TYPE_STRING,
        label=_FIELD.LABEL_REPEATED if repeated else _FIELD.LABEL_OPTIONAL,
    )


def _message(
    message: descriptor_pb2.DescriptorProto, name: str, number: int, type_name: str
) -> None:
    message.field.add(
        name=name,
        number=number,
        type=_FIELD.TYPE_MESSAGE,
        label=_FIELD.LABEL_OPTIONAL,
        type_name=type_name,
    )


def _library_file() -> descriptor_pb2.FileDescriptorProto:
    file_proto = descriptor_pb2.FileDescriptorProto(
        name="library_tank/library.proto",
        package=PACKAGE,
        syntax="proto3",
        dependency=["google/protobuf/timestamp.proto"],
    )

    book = file_proto.message_type.add(name="Book")
    _string(book, "id", 1)
    _string(book, "name", 2)
    _string(book, "author_id", 3, repeated=True)
    _message(book, "created_at", 4, ".google.protobuf.Timestamp")
    _message(book, "updated_at", 5, ".google.protobuf.Timestamp")

    request = file_proto.message_type.add(name="AddBookRequest")
    _string(request, "name", 1)
    _string(request, "author_id", 2, repeated=True)

    response = file_proto.message_type.add(name="AddBookResponse")
    _message(response, "book", 1, f".{PACKAGE}.Book")

    service = file_proto.service.add(name=SERVICE)
    service.method.add(
        name="AddBook",
        input_type=f".{PACKAGE}.AddBookRequest",
        output_type=f".{PACKAGE}.AddBookResponse",
    )
    return file_proto


_POOL = descriptor_pool.DescriptorPool()
_POOL.AddSerializedFile(timestamp_pb2.DESCRIPTOR.serialized_pb)
_POOL.AddSerializedFile(_library_file().SerializeToString())

Book = message_factory.GetMessageClass(_POOL.FindMessageTypeByName(f"{PACKAGE}.Book"))
AddBookRequest = message_factory.GetMessageClass(
    _POOL.FindMessageTypeByName(f"{PACKAGE}.AddBookRequest")
)
AddBookResponse = message_factory.GetMessageClass(
    _POOL.FindMessageTypeByName(f"{PACKAGE}.AddBookResponse")
)


def encode_add_book_request(payload: dict[str, Any]) -> bytes:
    request = AddBookRequest(
        name=payload.get("name", ""),
        author_id=list(payload.get("author_id", [])),
    )
    return request.SerializeToString()


def decode_add_book_request(data: bytes) -> dict[str, Any]:
    return MessageToDict(AddBookRequest.FromString(data), preserving_proto_field_name=True)


def encode_add_book_response(book: dict[str, Any]) -> bytes:
    response = AddBookResponse(
        book=Book(
            id=book.get("id", ""),
            name=book.get("name", ""),
            author_id=list(book.get("author_id", [])),
        )
    )
    return response.SerializeToString()


def decode_add_book_response(data: bytes) -> dict[str, Any]:
    return MessageToDict(AddBookResponse.FromString(data), preserving_proto_field_name=True)


__all__ = [
    "ADD_BOOK_METHOD",
    "AddBookRequest",
    "AddBookResponse",
    "Book",
    "decode_add_book_request",
    "decode_add_book_response",
    "encode_add_book_request",
    "encode_add_book_response",
]
