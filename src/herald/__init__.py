"""Herald: proactive notification scheduling and multi-channel delivery."""
