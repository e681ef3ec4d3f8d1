from __future__ import annotations
import hashlib
import string
import struct
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field, field_validator

# Object model of a Pkg, the unit of distribution.
# The field names (and aliases) are the wire format of the Pkg metadata file, which is what gets signed.
# Do not rename them.

SPEC_VERSION = "0.1.0"

_SHA256SUM_STR_LEN = 64

class PartsType(str, Enum):
    """Identifies the type of parts in a Pkg."""
    FILE = "FILE"

class ProvidesType(str, Enum):
    """Identifies what the parts of a Pkg provide."""
    DOCKER = "DOCKER"

PartId = str
DockerImageRepoTag = str

class PartSource(BaseModel):
    model_config = ConfigDict(frozen=True)

    url:str

class DockerImagePart(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id:PartId
    sha256sum:str
    signatures:tuple[str, ...]
    expected_bytes:int = Field(alias="bytes")
    sources:tuple[PartSource, ...]

    @field_validator("signatures", "sources", mode="before")
    @classmethod
    def null_as_empty(cls, value):
        #metadata written by other tools may carry null for an empty list
        return () if value is None else value

class DockerPartsProvides(BaseModel):
    """Metadata that describes the use of the parts in a Pkg: maps each part id to its docker image name."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    provides_type:ProvidesType = Field(alias="provides_types", default=ProvidesType.DOCKER)
    images:dict[PartId, DockerImageRepoTag]

    @field_validator("images", mode="before")
    @classmethod
    def null_as_empty(cls, value):
        return {} if value is None else value

class Meta(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    parts_type:PartsType
    author:str
    spec_version:str
    provides:DockerPartsProvides
    create_ts:int = Field(alias="createTS") #unix nanoseconds

class Pkg(BaseModel):
    model_config = ConfigDict(frozen=True)

    id:str
    meta:Meta
    parts:dict[PartId, DockerImagePart]

    @field_validator("parts", mode="before")
    @classmethod
    def null_as_empty(cls, value):
        return {} if value is None else value

    def to_bytes(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode('utf-8')

    @classmethod
    def from_bytes(cls, raw:bytes|str) -> Pkg:
        return cls.model_validate_json(raw)

    def image_name(self, part_id:PartId) -> DockerImageRepoTag | None:
        return self.meta.provides.images.get(part_id)


def pkg_id(author:str, create_ts:int, image_ids:list[str]) -> str:
    """Creates an id for a Pkg that is repeatably calculable from its content."""
    hasher = hashlib.sha256()
    hasher.update(author.encode('utf-8'))
    hasher.update(struct.pack('<Q', create_ts & 0xFFFFFFFFFFFFFFFF))
    for image_id in sorted(image_ids):
        hasher.update(image_id.encode('utf-8'))
    return hasher.hexdigest()

def is_sha256sum_str(sha256sum:str) -> bool:
    return isinstance(sha256sum, str) and len(sha256sum) == _SHA256SUM_STR_LEN and all(c in string.hexdigits for c in sha256sum)

def is_safe_file_name(name:str) -> bool:
    """Pkg ids and part ids are used as file names in the destination directory."""
    return (isinstance(name, str) and len(name) > 0 and name not in ('.', '..')
        and '/' not in name and '\\' not in name and '\x00' not in name)
