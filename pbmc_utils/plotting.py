#!/usr/bin/env python3
"""
Shared figure output for the analysis modules
"""

import matplotlib.pyplot as plt
from pathlib import Path


def save_or_show(fig, save_dir, filename, dpi=300):
    """Save a figure into save_dir and close it, or show it when save_dir is None

    Returns:
        Path of the written file, or None when the figure was shown
    """
    if save_dir:
        save_dir = Path(save_dir)
        save_dir.mkdir(parents=True, exist_ok=True)
        out_path = save_dir / filename
        fig.savefig(out_path, dpi=dpi, bbox_inches="tight")
        print(f"  Saved: {out_path}")
        plt.close(fig)
        return out_path

    plt.show()
    return None
