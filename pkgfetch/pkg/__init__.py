from . pkg_model import *
from . pkg_builder import PkgBuilder, PkgBuildError, new_docker_image_pkg_builder
