"""
Usage:
```python
config = PullConfig(image_root=Path("/var/lib/machines"))
status = pull_image(FORMATS["raw"], config, "https://example.com/images/foo.raw.xz")
```
"""

__version__ = "0.1.0"

from .driver import (
    FORMATS,
    PullConfig,
    PullDriver,
    PullFormat,
    PullResult,
    pull_image,
)
from .flags import PullFlags, VerificationMode
from .puller import PullRequest, RawPuller, TarPuller
