from inkwell.models.asset import Asset, AssetOrigin, ExtractionStatus, UploadStatus

__all__ = ["Asset", "AssetOrigin", "ExtractionStatus", "UploadStatus"]
