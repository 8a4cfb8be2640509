from upload_backend.models.upload import UploadChunk, UploadSession

__all__ = ["UploadSession", "UploadChunk"]
