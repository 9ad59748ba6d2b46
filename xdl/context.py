from pathlib import Path
from xdl.common.logger import set_debug_mode, setup_logger
from xdl.core.config import XDLConfig, load_config
from xdl.services.manifest_service import SignedManifestCache
from xdl.services.project_logs import ProjectLogger
from xdl.services.user_service import UserManager
from xdl.services.user_settings import UserSettings

logger = setup_logger("Context")


class XDLContext:
    """
    Everything that would otherwise be process-wide state: configuration,
    offline flag, the signed-in user, the signed-manifest cache and one
    log sink per project.
    """

    def __init__(self, config: XDLConfig | None = None):
        self.config = config or load_config()
        self.offline = self.config.offline
        self.user_settings = UserSettings(self.config)
        self.user_manager = UserManager(self)
        self.signed_manifest_cache = SignedManifestCache()
        self._project_loggers: dict[str, ProjectLogger] = {}
        if self.config.debug:
            set_debug_mode(True)

    def go_offline(self) -> None:
        if not self.offline:
            logger.warning("[Context] Switching to offline mode")
        self.offline = True

    def project_logger(self, project_root) -> ProjectLogger:
        key = str(Path(project_root).resolve())
        if key not in self._project_loggers:
            self._project_loggers[key] = ProjectLogger(project_root)
        return self._project_loggers[key]
