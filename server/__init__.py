"""QuickPic relay server: authentication, friend graph and message queue."""
