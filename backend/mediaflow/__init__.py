"""MediaFlow：存储事件驱动的媒体处理流水线"""
