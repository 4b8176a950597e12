"""diffdirs-bootstrap - 为编辑器插件准备原生模块。

优先下载与宿主平台/版本匹配的预编译产物，下载失败时回退到本地 cargo 编译。

环境变量:
    DIFFDIRS_PLUGIN_ROOT: 插件根目录（默认当前目录）
    DIFFDIRS_VERSION_TIER: 版本档位覆盖值（默认自动检测）
    DIFFDIRS_SKIP_DOWNLOAD: 跳过下载 (默认 false)

用法:
    diffdirs-bootstrap --plugin-root ~/.local/share/nvim/lazy/diffdirs.nvim
"""

__version__ = "0.1.0"

from .app import main
from .sequencer import BootstrapOutcome, BootstrapSequencer, bootstrap

__all__ = ["__version__", "main", "bootstrap", "BootstrapOutcome", "BootstrapSequencer"]
