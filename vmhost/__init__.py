"""vmhost: 단일 호스트 VM 수명 주기 및 리소스 오케스트레이터."""
