"""DriveSage: analyze and organize a local cloud-drive folder."""
