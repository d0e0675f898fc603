# -*- coding: utf-8 -*-
from __future__ import annotations

from pdfmd.converter.runner import main


if __name__ == "__main__":
    raise SystemExit(main())
