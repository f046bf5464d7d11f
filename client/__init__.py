"""QuickPic command-line client."""
