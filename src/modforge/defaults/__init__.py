from .artefact import ZipArtefactBuilder
from .builder import ManifestModuleBuilder
from .merger import ScriptSourceMerger
from .repository import LocalModuleRepository

__all__ = ["LocalModuleRepository", "ManifestModuleBuilder", "ScriptSourceMerger", "ZipArtefactBuilder"]
