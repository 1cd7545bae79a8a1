NAME = "ilias-mirror"
VERSION = "1.0.0"
