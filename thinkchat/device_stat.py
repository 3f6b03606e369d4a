"""
Device memory statistics shown next to the generation output.
"""

import logging
from typing import Dict

import psutil
import torch

logger = logging.getLogger(__name__)


class DeviceStat:
    """Snapshot of process, system and accelerator memory usage."""

    def __init__(self):
        self.process = psutil.Process()

    def get_current_metrics(self) -> Dict:
        """
        Get current memory metrics.

        Returns:
            Dictionary with memory figures in MB (GPU figures only when CUDA is in use)
        """
        try:
            memory_info = self.process.memory_info()
            virtual = psutil.virtual_memory()
            metrics = {
                "process_mb": round(memory_info.rss / (1024 * 1024), 2),
                "system_used_mb": round(virtual.used / (1024 * 1024), 2),
                "system_percent": virtual.percent,
            }
        except Exception as e:
            logger.error(f"Error collecting metrics: {e}")
            return {}

        if torch.cuda.is_available():
            metrics["gpu_allocated_mb"] = round(torch.cuda.memory_allocated() / (1024 * 1024), 2)
            metrics["gpu_reserved_mb"] = round(torch.cuda.memory_reserved() / (1024 * 1024), 2)

        return metrics

    def summary(self) -> str:
        """One-line memory summary for a status bar."""
        metrics = self.get_current_metrics()
        if not metrics:
            return "Memory: n/a"

        text = f"Memory: {metrics['process_mb']:.0f}MB (system {metrics['system_percent']:.0f}%)"
        if "gpu_allocated_mb" in metrics:
            text += f", GPU {metrics['gpu_allocated_mb']:.0f}MB"
        return text
