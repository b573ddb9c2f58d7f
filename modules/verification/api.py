"""
内容审核 API 端点

上传文件后在后台运行审核流水线，客户端通过任务 ID 轮询进度和结论。
"""

from flask import jsonify, request
import logging

from .errors import InvalidInput
from .models import VerificationJob

logger = logging.getLogger(__name__)

# 全局审核任务管理器实例（在 webserver.py 中初始化）
VERIFICATION_MANAGER = None


def init_verification_manager(manager):
    """初始化审核任务管理器

    Args:
        manager: VerificationManager 实例
    """
    global VERIFICATION_MANAGER
    VERIFICATION_MANAGER = manager
    logger.info("Verification manager initialized")


def _not_initialized():
    return jsonify({"status": "error", "message": "Verification manager not initialized"}), 500


def _job_not_found(job_id):
    return jsonify({"status": "error", "message": f"Job not found: {job_id}"}), 404


def register_routes(app):
    """注册审核 API 路由

    Args:
        app: Flask 应用实例
    """

    @app.route('/api/verification/jobs', methods=['POST'])
    def verification_submit():
        """提交审核任务

        multipart 表单字段：
            file: 待审核文件（必填）
            thumbnail: 缩略图（可选）
            content_type: video / audio / book
            title: 标题
            description: 描述（可选）

        Returns:
            202 和任务 ID；输入不合法时返回 400
        """
        if VERIFICATION_MANAGER is None:
            return _not_initialized()

        upload = request.files.get('file')
        if upload is None or upload.filename == '':
            return jsonify({"status": "error", "message": "Missing file"}), 400

        thumbnail = request.files.get('thumbnail')
        thumbnail_bytes = None
        thumbnail_mime_type = None
        if thumbnail is not None and thumbnail.filename != '':
            thumbnail_bytes = thumbnail.read()
            thumbnail_mime_type = thumbnail.mimetype or "image/jpeg"

        try:
            job = VerificationJob.create(
                file_bytes=upload.read(),
                mime_type=upload.mimetype or "",
                content_type=request.form.get('content_type', ''),
                title=request.form.get('title', '') or upload.filename,
                description=request.form.get('description') or None,
                thumbnail_bytes=thumbnail_bytes,
                thumbnail_mime_type=thumbnail_mime_type,
            )
            # 同步校验，输入错误直接返回 400
            job.validate()
        except InvalidInput as e:
            logger.warning(f"Rejected verification upload: {e.message}")
            return jsonify({"status": "error", "kind": e.kind, "message": e.message}), 400

        record = VERIFICATION_MANAGER.submit(job)
        return jsonify({
            "status": "ok",
            "job_id": record.job_id,
            "job_url": f"/api/verification/jobs/{record.job_id}",
            "progress_url": f"/api/verification/jobs/{record.job_id}/progress",
        }), 202

    @app.route('/api/verification/jobs/<job_id>', methods=['GET'])
    def verification_status(job_id):
        """获取任务状态、进度事件以及结论或错误"""
        if VERIFICATION_MANAGER is None:
            return _not_initialized()

        record = VERIFICATION_MANAGER.get_record(job_id)
        if not record:
            return _job_not_found(job_id)

        include_frames = request.args.get('frames', '').lower() in ('1', 'true', 'yes')
        response = record.to_dict(include_frames=include_frames)
        response["success"] = True
        return jsonify(response)

    @app.route('/api/verification/jobs/<job_id>/progress', methods=['GET'])
    def verification_progress(job_id):
        """获取指定序号之后的进度事件

        Query:
            since: 已收到的事件数量，默认 0
        """
        if VERIFICATION_MANAGER is None:
            return _not_initialized()

        record = VERIFICATION_MANAGER.get_record(job_id)
        if not record:
            return _job_not_found(job_id)

        since = request.args.get('since', 0, type=int) or 0
        events = record.events_since(since)
        return jsonify({
            "success": True,
            "job_id": job_id,
            "status": record.status.value,
            "percent": record.percent,
            "finished": record.is_finished(),
            "next": since + len(events),
            "events": [event.to_dict() for event in events],
        })

    @app.route('/api/verification/jobs/<job_id>/cancel', methods=['POST'])
    def verification_cancel(job_id):
        """取消任务"""
        if VERIFICATION_MANAGER is None:
            return _not_initialized()

        record = VERIFICATION_MANAGER.get_record(job_id)
        if not record:
            return _job_not_found(job_id)

        cancelled = VERIFICATION_MANAGER.cancel(job_id, reason="client request")
        return jsonify({
            "success": cancelled,
            "job_id": job_id,
            "status": record.status.value,
            "message": "Cancellation requested" if cancelled else "Job already finished",
        })

    @app.route('/api/verification/health', methods=['GET'])
    def verification_health():
        """检查 ffmpeg/ffprobe 是否可用"""
        if VERIFICATION_MANAGER is None:
            return _not_initialized()

        config = VERIFICATION_MANAGER.config
        checker = VERIFICATION_MANAGER.pipeline.checker
        tools = {
            "ffmpeg": checker.is_available(config.ffmpeg_path),
            "ffprobe": checker.is_available(config.ffprobe_path),
        }
        return jsonify({
            "success": True,
            "status": "ok" if all(tools.values()) else "degraded",
            "tools": tools,
            "jobs": VERIFICATION_MANAGER.get_stats(),
        })

    logger.info("Verification API routes registered")
