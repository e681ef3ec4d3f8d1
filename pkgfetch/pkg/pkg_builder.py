from __future__ import annotations
import logging
import threading
import time
from .pkg_model import *

logger = logging.getLogger(__name__)

class PkgBuildError(ValueError):
    pass

class PkgBuilder:
    """Assembles an immutable Pkg from parts. 
    
    Get a builder from new_docker_image_pkg_builder, populate it with add_part, then call build.
    The image_ids contain all intended part ids; build fails if any of them was not added as a part.
    The image_ids are also a part of the immutable identity of the Pkg.
    """

    _part_lock:threading.Lock
    _permit_empty_signatures:bool
    _image_ids:list[str]
    _parts:dict[PartId, DockerImagePart]
    _images:dict[PartId, DockerImageRepoTag]

    def __init__(self, parts_type:PartsType, author:str, image_ids:list[str], create_ts:int|None=None):
        if create_ts is None:
            create_ts = time.time_ns()
        self._part_lock = threading.Lock()
        self._permit_empty_signatures = False
        self._image_ids = list(image_ids)
        self._parts = {}
        self._images = {}
        self.parts_type = parts_type
        self.author = author
        self.create_ts = create_ts
        self._id = pkg_id(author, create_ts, self._image_ids)

    @property
    def id(self) -> str:
        return self._id

    def set_permit_empty_signatures(self) -> PkgBuilder:
        """Allows parts without signatures. This weakens the integrity guarantees of the built Pkg."""
        self._permit_empty_signatures = True
        logger.warning(f"Warning: permit_empty_signatures set on PkgBuilder for Pkg {self._id} (author: {self.author})")
        return self

    def add_part(
            self, 
            id:str|None, 
            sha256sum:str, 
            docker_image_repo_tag:str, 
            signatures:list[str], 
            expected_bytes:int, 
            *sources:PartSource|str,
            ) -> PkgBuilder:
        """Adds a part to the parts of the Pkg and to the provides section of its meta.
        
        The id is optional; if it is empty, the sha256sum is used as the id. 
        A valid sha256sum is the 64-char hex representation of the 256-bit hash of the part content.
        Fails with a PkgBuildError, leaving the builder unchanged, if the part conflicts with an existing one.
        """
        if not is_sha256sum_str(sha256sum):
            length = len(sha256sum) if isinstance(sha256sum, str) else None
            raise PkgBuildError(f"Invalid sha256sum, expected a 64-char hex representation of a hash. Hash was {length} chars in length.")

        part_id = (id or "").strip()
        if not part_id:
            part_id = sha256sum.strip()

        if not docker_image_repo_tag:
            raise PkgBuildError(f"No docker image name provided for part {part_id}.")
        if expected_bytes is None or expected_bytes < 0:
            raise PkgBuildError(f"Invalid byte size for part {part_id}: {expected_bytes}.")

        signatures = tuple(signatures or ())
        part_sources = tuple(s if isinstance(s, PartSource) else PartSource(url=s) for s in sources)

        #check and insert in one critical section, so concurrent callers cannot add conflicting parts
        with self._part_lock:
            if part_id in self._parts:
                raise PkgBuildError(f"Provided pkg part id conflicts with already existing part. Existing: {self._parts[part_id]}")

            for existing in self._parts.values():
                if existing.sha256sum.lower() == sha256sum.lower():
                    raise PkgBuildError(f"Provided pkg part sha256sum conflicts with already existing part. Existing: {sha256sum}")

            for image_id, image_name in self._images.items():
                if image_id == part_id:
                    raise PkgBuildError(f"Provided pkg part id conflicts with already existing entry in meta section. Existing: {part_id}")
                if image_name == docker_image_repo_tag:
                    raise PkgBuildError(f"Provided pkg part's docker image name conflicts with already existing entry in meta section. Existing: {docker_image_repo_tag}")

            if len(signatures) == 0 and not self._permit_empty_signatures:
                raise PkgBuildError("Provided signatures are empty and this builder is configured to disallow empty signatures for each part.")

            if len(part_sources) == 0:
                raise PkgBuildError("No provided sources.")

            self._parts[part_id] = DockerImagePart(
                id=part_id,
                sha256sum=sha256sum,
                signatures=signatures,
                expected_bytes=expected_bytes,
                sources=part_sources,
            )
            self._images[part_id] = docker_image_repo_tag

        logger.debug(f"Added part {part_id} ({docker_image_repo_tag}) to Pkg {self._id}")
        return self

    def build(self) -> tuple[Pkg, bytes]:
        """Returns the Pkg and its serialized bytes. The bytes are what must be hashed and signed."""
        with self._part_lock:
            for image_id in self._image_ids:
                if image_id not in self._parts:
                    raise PkgBuildError(f"Expected image with id: {image_id} not in Pkg parts. Use PkgBuilder.add_part() to add the appropriate part for this image id.")

            pkg = Pkg(
                id=self._id,
                meta=Meta(
                    parts_type=self.parts_type,
                    author=self.author,
                    spec_version=SPEC_VERSION,
                    provides=DockerPartsProvides(provides_type=ProvidesType.DOCKER, images=dict(self._images)),
                    create_ts=self.create_ts,
                ),
                parts=dict(self._parts),
            )
        return pkg, pkg.to_bytes()


def new_docker_image_pkg_builder(parts_type:PartsType|str, author:str, image_ids:list[str]) -> PkgBuilder:
    """Factory for a PkgBuilder of docker image parts."""
    try:
        parts_type = PartsType(parts_type)
    except ValueError as e:
        raise PkgBuildError(f"Unknown parts_type: {parts_type}") from e

    if parts_type == PartsType.FILE:
        logger.debug(f"Building docker image Pkg with parts of type {parts_type.value}")
    else:
        raise PkgBuildError(f"Unsupported parts_type: {parts_type}")

    return PkgBuilder(parts_type, author, image_ids)
