"""Admin HTTP surface and trace inspection."""
