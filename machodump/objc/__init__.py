from .objc_type_decoder import (
    TypeKind,
    DecodedType,
    StructMember,
    ObjcTypeDecoder,
    DecodedMethodSignature,
)

__all__ = [
    "TypeKind",
    "DecodedType",
    "StructMember",
    "ObjcTypeDecoder",
    "DecodedMethodSignature",
]
